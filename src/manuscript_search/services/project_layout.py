"""
Project layout resolution.

A project is a directory directly below the projects root. An optional
``project.json`` lists which sub-directories hold manuscript content and
which hold settings notes:

    {
        "content_directories": ["manuscript"],
        "settings_directories": ["settings", "characters"]
    }

Without the file the whole project directory counts as content.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from ..logging_config import configure_logger_for_debug_trace
from ..models import FileCategory
from ..search_exceptions import InvalidInputError

logger = configure_logger_for_debug_trace(__name__)

DEFAULT_EXTENSIONS = ("md", "txt")

_CONFIG_KEYS = {
    FileCategory.CONTENT: ("content_directories", "contentDirectories"),
    FileCategory.SETTINGS: ("settings_directories", "settingsDirectories"),
}


def validate_project_id(project_id: str) -> str:
    """Reject ids that cannot name a directory directly below the root."""
    if (not project_id or project_id.startswith(".")
            or "/" in project_id or "\\" in project_id):
        raise InvalidInputError(f"Invalid project id: {project_id!r}")
    return project_id


@dataclass
class ProjectLayout:
    """
    Directories and file categories of one project.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    project_id: str
    projects_root: Path
    content_directories: List[str] = field(default_factory=lambda: ["."])
    settings_directories: List[str] = field(default_factory=list)
    extensions: Sequence[str] = DEFAULT_EXTENSIONS

    def __post_init__(self):
        # Watcher event paths are resolved, so the root must be too
        self.projects_root = Path(self.projects_root).resolve()

    @property
    def project_dir(self) -> Path:
        return self.projects_root / self.project_id

    def _absolute(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        if not path.is_absolute():
            path = self.projects_root / path
        return path.resolve()

    def relative_path(self, path: Union[str, Path]) -> str:
        """
        Path relative to the projects root with POSIX separators.

        Relative input is taken as relative to the projects root.

        Raises:
            InvalidInputError: If the path lies outside this project
        """
        absolute = self._absolute(path)
        try:
            absolute.relative_to(self.project_dir)
        except ValueError:
            raise InvalidInputError(
                f"{path} is not inside project {self.project_id}"
            ) from None
        return absolute.relative_to(self.projects_root).as_posix()

    def _directory_entries(self) -> List[Tuple[Path, FileCategory]]:
        entries = []
        for category, directories in (
            (FileCategory.CONTENT, self.content_directories),
            (FileCategory.SETTINGS, self.settings_directories),
        ):
            for directory in directories:
                entries.append((self.project_dir / directory, category))
        return entries

    def categorize(self, path: Union[str, Path]) -> Optional[FileCategory]:
        """Category of the most specific configured directory containing path."""
        absolute = self._absolute(path)
        best: Optional[FileCategory] = None
        best_depth = -1
        for directory, category in self._directory_entries():
            directory = Path(*[p for p in directory.parts if p != "."])
            try:
                absolute.relative_to(directory)
            except ValueError:
                continue
            if len(directory.parts) > best_depth:
                best, best_depth = category, len(directory.parts)
        return best

    def is_indexable(self, path: Union[str, Path]) -> bool:
        """Allow-listed extension and no hidden segment below the project dir."""
        absolute = self._absolute(path)
        if absolute.suffix.lower().lstrip(".") not in self.extensions:
            return False
        try:
            parts = absolute.relative_to(self.project_dir).parts
        except ValueError:
            return False
        return not any(part.startswith(".") for part in parts)

    def discover_files(self) -> List[Tuple[Path, FileCategory]]:
        """All indexable files of the configured directories, sorted, without duplicates."""
        found = {}
        for directory, _ in self._directory_entries():
            if not directory.is_dir():
                logger.debug(f"Configured directory missing: {directory}")
                continue
            for path in directory.rglob("*"):
                if path.is_file() and path not in found and self.is_indexable(path):
                    category = self.categorize(path)
                    if category is not None:
                        found[path] = category
        return sorted(found.items(), key=lambda item: item[0].as_posix())


def load_project_layout(
    projects_root: Path,
    project_id: str,
    config_file: str = "project.json",
    extensions: Sequence[str] = DEFAULT_EXTENSIONS,
) -> ProjectLayout:
    """
    Read a project's layout from its config file.

    Raises:
        InvalidInputError: If the project id is invalid or the directory is missing
    """
    validate_project_id(project_id)
    projects_root = Path(projects_root).resolve()
    project_dir = projects_root / project_id
    if not project_dir.is_dir():
        raise InvalidInputError(f"Unknown project: {project_id}")

    layout = ProjectLayout(
        project_id=project_id,
        projects_root=projects_root,
        extensions=tuple(ext.lower().lstrip(".") for ext in extensions),
    )

    config_path = project_dir / config_file
    if not config_path.exists():
        return layout

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable {config_path}: {e}")
        return layout

    content = _read_directories(data, FileCategory.CONTENT)
    settings = _read_directories(data, FileCategory.SETTINGS)
    if content is not None or settings is not None:
        layout.content_directories = content or []
        layout.settings_directories = settings or []
    return layout


def _read_directories(data: dict, category: FileCategory) -> Optional[List[str]]:
    if not isinstance(data, dict):
        return None
    for key in _CONFIG_KEYS[category]:
        value = data.get(key)
        if isinstance(value, list):
            return [str(item) for item in value if str(item).strip()]
    return None
