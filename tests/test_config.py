"""YAML configuration loading."""

from pathlib import Path

from continuity_engine.config import AppConfig, StyleConfig

REPO_ROOT = Path(__file__).resolve().parents[1]


def test_defaults(tmp_path):
    config = AppConfig.from_dict({}, base_dir=tmp_path)

    assert config.project_name == tmp_path.name
    assert config.paths.sqlite_path == str((tmp_path / ".continuity" / "engine.db").resolve())
    assert (config.chunking.min_chars, config.chunking.max_chars) == (800, 1500)
    assert config.llm.enabled is False
    assert config.style.repetition_threshold.project_count == 12
    assert config.style.repetition_threshold.scene_count == 3


def test_from_yaml_resolves_relative_paths(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "\n".join(
            [
                "project_name: Ashfall",
                "paths:",
                "  sqlite_path: data/ashfall.db",
                "llm:",
                "  enabled: true",
                "  provider: http",
                "  base_url: https://llm.example.com/complete",
                "style:",
                "  stopwords: [the, a]",
                "  repetition_threshold:",
                "    project_count: 20",
                "  tone_baseline_scenes: 4",
            ]
        ),
        encoding="utf-8",
    )

    config = AppConfig.from_yaml(str(path))

    assert config.project_name == "Ashfall"
    assert config.paths.sqlite_path == str((tmp_path / "data" / "ashfall.db").resolve())
    assert config.llm.provider == "http"
    assert config.style.stopwords == ["the", "a"]
    assert config.style.repetition_threshold.project_count == 20
    assert config.style.repetition_threshold.scene_count == 3
    assert config.style.baseline_scene_count == 4


def test_for_project(tmp_path):
    assert AppConfig.for_project(str(tmp_path)).project_name == tmp_path.name

    (tmp_path / "continuity.yaml").write_text("project_name: Embers\n", encoding="utf-8")
    assert AppConfig.for_project(str(tmp_path)).project_name == "Embers"


def test_baseline_scene_count_has_a_floor():
    assert StyleConfig(tone_baseline_scenes=0).baseline_scene_count == 1


def test_sample_config_loads():
    config = AppConfig.from_yaml(str(REPO_ROOT / "config.yaml"))

    assert config.project_name == "My Manuscript"
    assert config.llm.provider == "gemini"
    assert config.chunking.long_block == 4000
