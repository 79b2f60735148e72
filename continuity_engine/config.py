"""Configuration loading for the continuity engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


PROJECT_CONFIG_FILENAME = "continuity.yaml"


def _resolve_path(raw_path: str, base_dir: Path) -> str:
    path = Path(raw_path).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return str(path)


@dataclass
class PathsConfig:
    """Filesystem locations used by the pipeline."""

    sqlite_path: str = ".continuity/engine.db"


@dataclass
class ChunkingConfig:
    """Character bounds for chunk packing."""

    min_chars: int = 800
    max_chars: int = 1500
    long_block: int = 4000
    split_target: int = 1500
    split_window: int = 200


@dataclass
class LLMConfig:
    """Language-model provider settings."""

    enabled: bool = False
    provider: str = "null"
    model: str = "gemini-2.5-flash"
    base_url: Optional[str] = None
    timeout_seconds: float = 30.0
    max_retries: int = 2


@dataclass
class RepetitionThreshold:
    project_count: int = 12
    scene_count: int = 3


@dataclass
class StyleConfig:
    """Style analyzer thresholds."""

    stopwords: Union[str, List[str]] = "default"
    repetition_threshold: RepetitionThreshold = field(default_factory=RepetitionThreshold)
    tone_baseline_scenes: int = 10

    @property
    def baseline_scene_count(self) -> int:
        return max(1, int(self.tone_baseline_scenes))


@dataclass
class AppConfig:
    """Top-level app configuration."""

    project_name: str = "Untitled"
    paths: PathsConfig = field(default_factory=PathsConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    style: StyleConfig = field(default_factory=StyleConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "AppConfig":
        """Build config from a dictionary."""
        base = Path.cwd() if base_dir is None else base_dir

        paths_data = data.get("paths", {})
        paths = PathsConfig(
            sqlite_path=_resolve_path(paths_data.get("sqlite_path", PathsConfig.sqlite_path), base),
        )

        chunking = ChunkingConfig(**data.get("chunking", {}))
        llm = LLMConfig(**data.get("llm", {}))

        style_data = dict(data.get("style", {}))
        threshold = RepetitionThreshold(**style_data.pop("repetition_threshold", {}))
        style = StyleConfig(repetition_threshold=threshold, **style_data)

        return cls(
            project_name=data.get("project_name") or base.name or "Untitled",
            paths=paths,
            chunking=chunking,
            llm=llm,
            style=style,
        )

    @classmethod
    def from_yaml(cls, path: str) -> "AppConfig":
        """Load config from YAML."""
        config_path = Path(path).resolve()
        with config_path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        return cls.from_dict(data, base_dir=config_path.parent)

    @classmethod
    def for_project(cls, root_path: str) -> "AppConfig":
        """Load ``continuity.yaml`` from a project root, or defaults if absent."""
        root = Path(root_path).resolve()
        config_path = root / PROJECT_CONFIG_FILENAME
        if config_path.is_file():
            return cls.from_yaml(str(config_path))
        return cls.from_dict({}, base_dir=root)
