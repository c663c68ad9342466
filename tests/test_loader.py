"""Tests for pipeline document loading and step parsing."""

import pytest

from sitepipe.exceptions import ConfigurationError
from sitepipe.pipeline.loader import build_steps, load_pipeline, merge_documents
from sitepipe.pipeline.options import StepOptions, resolve_path_within_root

from .conftest import write_pipeline


class TestDocumentParsing:
    """JSON5 and YAML documents."""

    def test_json_with_comments_and_trailing_commas(self, tmp_path):
        path = tmp_path / "pipeline.json"
        path.write_text(
            """{
              // publish the docs
              "cache": true,
              "steps": [
                {"task": "Build", "config": "site.json", "out": "_site",},
              ],
            }""",
            encoding="utf-8",
        )
        document = load_pipeline(str(path))

        assert document.cache_enabled
        assert document.base_dir == str(tmp_path)
        assert [step.task for step in document.steps] == ["build"]
        assert document.steps[0].label == "[1/1] build"

    def test_yaml_document(self, tmp_path):
        path = tmp_path / "pipeline.yml"
        path.write_text(
            "profile: true\n"
            "steps:\n"
            "  - task: sitemap\n"
            "    siteRoot: _site\n"
            "  - task: audit\n"
            "    label: Audit the site\n",
            encoding="utf-8",
        )
        document = load_pipeline(str(path))

        assert document.profile_enabled
        assert document.profile_on_fail
        assert [step.label for step in document.steps] == ["[1/2] sitemap", "Audit the site"]

    def test_invalid_json_is_configuration_error(self, tmp_path):
        path = tmp_path / "pipeline.json"
        path.write_text("{steps: [", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="not valid"):
            load_pipeline(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Pipeline config not found"):
            load_pipeline(str(tmp_path / "nope.json"))

    def test_steps_array_required(self, tmp_path):
        path = tmp_path / "pipeline.json"
        path.write_text('{"steps": {}}', encoding="utf-8")
        with pytest.raises(ConfigurationError, match="must include a steps array"):
            load_pipeline(str(path))

    def test_root_must_be_object(self, tmp_path):
        path = tmp_path / "pipeline.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="must be an object"):
            load_pipeline(str(path))


class TestExtends:
    def test_base_steps_come_first(self, tmp_path):
        (tmp_path / "shared").mkdir()
        write_pipeline(tmp_path / "shared" / "base.json", [{"task": "build", "config": "c", "out": "o"}], cache=True)
        child = write_pipeline(
            tmp_path / "pipeline.json",
            [{"task": "sitemap"}],
            extends="shared/base.json",
            cache=False,
        )
        document = load_pipeline(str(child))

        assert [step.task for step in document.steps] == ["build", "sitemap"]
        assert not document.cache_enabled
        assert "extends" not in document.raw

    def test_inheritance_loop(self, tmp_path):
        write_pipeline(tmp_path / "a.json", [], extends="b.json")
        write_pipeline(tmp_path / "b.json", [], extends="a.json")
        with pytest.raises(ConfigurationError, match="inheritance loop"):
            load_pipeline(str(tmp_path / "a.json"))

    def test_diamond_is_not_a_loop(self, tmp_path):
        write_pipeline(tmp_path / "root.json", [{"task": "exec", "command": "x"}])
        write_pipeline(tmp_path / "left.json", [], extends="root.json")
        write_pipeline(tmp_path / "right.json", [], extends="root.json")
        write_pipeline(tmp_path / "top.json", [], extends=["left.json", "right.json"])

        document = load_pipeline(str(tmp_path / "top.json"))
        assert len(document.steps) == 2

    def test_invalid_extends_type(self, tmp_path):
        write_pipeline(tmp_path / "pipeline.json", [], extends=42)
        with pytest.raises(ConfigurationError, match="extends"):
            load_pipeline(str(tmp_path / "pipeline.json"))

    def test_merge_is_case_insensitive_and_recursive(self):
        merged = merge_documents(
            {"Cache": True, "nested": {"a": 1, "b": 1}},
            {"cache": False, "nested": {"b": 2}},
        )
        assert merged == {"cache": False, "nested": {"a": 1, "b": 2}}


class TestStepDefinitions:
    def test_entries_without_task_are_dropped(self):
        steps = build_steps([{"task": "build"}, {"label": "orphan"}, "junk", {"task": "audit"}])
        assert [(step.index, step.task) for step in steps] == [(1, "build"), (2, "audit")]
        assert steps[1].label == "[2/2] audit"

    def test_default_ids(self):
        steps = build_steps([{"task": "build"}, {"task": "build"}])
        assert [step.step_id for step in steps] == ["build-1", "build-2"]

    def test_duplicate_ids_rejected_case_insensitively(self):
        with pytest.raises(ConfigurationError, match="Duplicate pipeline step id 'Main'"):
            build_steps([{"task": "build", "id": "main"}, {"task": "audit", "id": "Main"}])

    def test_depends_on_forms(self):
        steps = build_steps([
            {"task": "build", "id": "site"},
            {"task": "build"},
            {"task": "audit", "dependsOn": ["SITE", "build#2"]},
            {"task": "sitemap", "dependsOn": "1;build"},
            {"task": "optimize", "dependsOn": 3},
        ])
        assert steps[2].depends_on == (1, 2)
        assert steps[3].depends_on == (1,)
        assert steps[4].depends_on == (3,)

    @pytest.mark.parametrize("reference, message", [
        ("0", "invalid dependsOn reference"),
        ("9", "invalid dependsOn reference"),
        ("missing", "unknown dependsOn reference"),
        ("2", "current/future step"),
        ("audit", "current/future step"),
    ])
    def test_bad_references(self, reference, message):
        with pytest.raises(ConfigurationError, match=message):
            build_steps([
                {"task": "build"},
                {"task": "audit", "dependsOn": reference},
                {"task": "sitemap"},
            ])

    def test_document_respect_explicit_copied_into_steps(self):
        steps = build_steps(
            [{"task": "optimize"}, {"task": "optimize", "respect-explicit": False}],
            respect_explicit=True,
        )
        assert steps[0].options["respectExplicitSettings"] is True
        assert "respectExplicitSettings" not in steps[1].options


class TestStepOptions:
    def test_kebab_aliases(self):
        options = StepOptions({"timeout-seconds": "30", "fail-on-warnings": True})
        assert options.integer("timeoutSeconds") == 30
        assert options.boolean("failOnWarnings") is True

    def test_string_list_accepts_delimited_strings(self):
        assert StepOptions({"include": "a/**, b/*.html;c"}).string_list("include") == ["a/**", "b/*.html", "c"]

    def test_non_bool_is_not_boolean(self):
        assert StepOptions({"clean": "yes"}).boolean("clean", default=False) is False

    def test_paths_must_stay_under_root(self, tmp_path):
        with pytest.raises(ConfigurationError, match="must resolve under pipeline root"):
            resolve_path_within_root(tmp_path, "../escape.json", ".sitepipe/cache.json")
        assert resolve_path_within_root(tmp_path, None, ".sitepipe/cache.json") == str(tmp_path / ".sitepipe" / "cache.json")
