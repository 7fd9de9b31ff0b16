"""
Tests for YAML Project Importer

Covers creation of a project tree, idempotent re-import, per-story error
isolation and top-level validation.
"""

import pytest
import yaml

from story_manager.importer import import_project, import_project_from_file, load_yaml_file
from story_manager.leases import LeaseManager


@pytest.fixture
def project_yaml():
    return {
        "project": {"id": "shop", "name": "Shop", "root_path": "/srv/shop", "config": {"lang": "py"}},
        "epics": [
            {
                "number": 1,
                "title": "Checkout",
                "status": "in-progress",
                "stories": [
                    {
                        "key": "1-1",
                        "title": "Cart",
                        "status": "ready-for-dev",
                        "acceptance_criteria": ["Items persist", {"criterion": "Totals", "met": True}],
                        "tasks": [
                            {"description": "Model", "subtasks": ["schema", "api"]},
                            "Wire UI",
                        ],
                    },
                    {"key": "1-2", "title": "Payment"},
                ],
            },
            {"number": 2, "stories": []},
        ],
    }


class TestImportProject:

    def test_creates_project_tree(self, temp_db, project_yaml):
        stats = import_project(temp_db, project_yaml)

        assert stats["project_created"] is True
        assert stats["epics_created"] == 2
        assert stats["stories_created"] == 2
        assert stats["tasks_created"] == 2
        assert stats["errors"] == []

        context = temp_db.get_story_context("shop:1-1")
        assert context["story"]["status"] == "ready-for-dev"
        assert context["story"]["epic"]["title"] == "Checkout"
        assert context["acceptance_criteria"] == [
            {"criterion": "Items persist", "met": False},
            {"criterion": "Totals", "met": True},
        ]
        assert [t["description"] for t in context["tasks"]] == ["Model", "Wire UI"]
        assert [s["idx"] for s in context["tasks"][0]["subtasks"]] == [1, 2]
        assert temp_db.get_epic("shop:epic-2")["epic"]["title"] == "Epic 2"

    def test_reimport_updates_in_place(self, temp_db, project_yaml):
        import_project(temp_db, project_yaml)
        LeaseManager(temp_db).reserve("shop:1-1", 1, "agent-a")
        before = temp_db.get_story_context("shop:1-1")["updated_at"]

        project_yaml["epics"][0]["stories"][0]["title"] = "Shopping cart"
        project_yaml["epics"][0]["stories"][0]["tasks"] = ["Different"]
        stats = import_project(temp_db, project_yaml)

        assert stats["project_created"] is False
        assert stats["epics_updated"] == 2
        assert stats["stories_updated"] == 2
        assert stats["tasks_created"] == 0

        context = temp_db.get_story_context("shop:1-1")
        assert context["story"]["title"] == "Shopping cart"
        assert context["updated_at"] > before
        assert [t["description"] for t in context["tasks"]] == ["Model", "Wire UI"], \
            "existing trees are kept on re-import"
        assert LeaseManager(temp_db).get("shop:1-1", 1)["agent"] == "agent-a"

    def test_bad_story_is_isolated(self, temp_db, project_yaml):
        project_yaml["epics"][0]["stories"].insert(1, {"key": "1-x", "title": "Bad", "status": "finished"})
        project_yaml["epics"][0]["stories"].append({"key": "no:colons", "title": "Bad key"})

        stats = import_project(temp_db, project_yaml)

        assert stats["stories_created"] == 2
        assert len(stats["errors"]) == 2
        assert "1-x" in stats["errors"][0]
        assert temp_db.get_story_context("shop:1-x")["error"] == "not_found"
        assert temp_db.get_story_context("shop:1-2")["success"]

    def test_bad_epic_is_skipped(self, temp_db, project_yaml):
        project_yaml["epics"].append({"number": "three", "stories": [{"key": "3-1", "title": "Lost"}]})
        stats = import_project(temp_db, project_yaml)

        assert stats["epics_created"] == 2
        assert len(stats["errors"]) == 1
        assert temp_db.get_story_context("shop:3-1")["error"] == "not_found"

    @pytest.mark.parametrize("data", [
        {},
        {"project": {"id": "shop"}},
        {"project": {"id": "a:b", "name": "Bad"}},
        {"project": {"id": "shop", "name": "Shop"}, "epics": {"number": 1}},
    ])
    def test_invalid_structure(self, temp_db, data):
        with pytest.raises(ValueError):
            import_project(temp_db, data)


class TestImportFromFile:

    def test_import_from_file(self, temp_db, project_yaml, tmp_path):
        path = tmp_path / "project.yaml"
        path.write_text(yaml.safe_dump(project_yaml))

        stats = import_project_from_file(temp_db, str(path))
        assert stats["stories_created"] == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_file(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("project: [unclosed")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_yaml_file(str(path))

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="dictionary"):
            load_yaml_file(str(path))
