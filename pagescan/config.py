"""
Runtime and user configuration.

``ScannerConfig`` holds the pipeline tunables and can be overridden from
``PAGESCAN_*`` environment variables. ``UserConfig`` holds the favorites and
preferences blob written by the front end; every field is checked on load and
falls back to the defaults when missing or malformed.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidUserConfig, ScannerError
from .models import ExportFormat, ExportJob, Page

logger = logging.getLogger(__name__)

ENV_PREFIX = "PAGESCAN_"
DEFAULT_USER_CONFIG_PATH = Path("~/.pagescan/config.json")


@dataclass
class ScannerConfig:
    """Pipeline tunables."""
    # Detection
    min_area_ratio: float = 0.15
    max_area_ratio: float = 0.98
    angle_tolerance: float = 35.0
    contour_epsilon: float = 0.02
    ambiguity_ratio: float = 0.05
    detect_max_dim: int = 1000

    # Stability gate
    stability_frames: int = 8
    stability_tolerance: float = 10.0
    max_frame_delta: float = 12.0
    min_sharpness: float = 0.0

    # Rectification (A4 at 150 dpi, portrait; landscape outlines get it swapped)
    page_width: int = 1240
    page_height: int = 1754
    page_dpi: float = 150.0

    # Export defaults
    export_format: str = "pdf"
    export_dpi: int = 300
    jpg_quality: int = 92
    naming_template: str = "{date}-{time}-{profile}-{counter}"
    free_space_margin_mb: int = 50

    # Runtime
    default_profile: str = "text"
    workers: int = 2
    log_level: str = "INFO"

    @property
    def page_size(self) -> Tuple[int, int]:
        return self.page_width, self.page_height

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "ScannerConfig":
        """Build a config, overriding defaults from PAGESCAN_<FIELD> variables."""
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                overrides[f.name] = _coerce(raw, type(f.default))
            except ValueError:
                logger.warning(f"Ignoring {ENV_PREFIX}{f.name.upper()}={raw!r}: not a valid {type(f.default).__name__}")
        return cls(**overrides)


def _coerce(raw: str, kind: type) -> Any:
    if kind is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if kind is int:
        return int(raw)
    if kind is float:
        return float(raw)
    return raw


def configure_logging(level: str = "INFO") -> None:
    """Set up root logging for the scanner."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class Favorite:
    """Where and how to export: folder + format + enhancement profile."""
    id: int
    name: str
    folder: str
    format: str = "PDF"
    profile: str = "text"

    def to_job(
        self,
        pages: Tuple[Page, ...],
        template: str,
        dpi: int = 300,
        jpg_quality: int = 92,
        **kwargs,
    ) -> ExportJob:
        return ExportJob(
            pages=pages,
            destination=Path(self.folder),
            format=ExportFormat.parse(self.format),
            dpi=dpi,
            jpg_quality=jpg_quality,
            template=template,
            profile_name=self.profile,
            **kwargs,
        )


@dataclass
class Preferences:
    default_format: str = "PDF"
    default_profile: str = "text"
    naming_pattern: str = "{date}-{counter}-{profile}"


def _default_favorites() -> List[Favorite]:
    return [Favorite(id=1, name="Workspace PDF", folder="~/Documents/Scans", format="PDF", profile="text")]


@dataclass
class UserConfig:
    favorites: List[Favorite] = field(default_factory=_default_favorites)
    preferences: Preferences = field(default_factory=Preferences)

    def find_favorite(self, name: str) -> Optional[Favorite]:
        for fav in self.favorites:
            if fav.name == name:
                return fav
        return None

    def save_favorite(
        self,
        name: str,
        folder: str,
        format: str,
        profile: str,
        fav_id: Optional[int] = None,
    ) -> Favorite:
        """Add a favorite, or replace the one with ``fav_id``.

        Raises:
            InvalidUserConfig: for empty fields or a duplicate name.
        """
        name, folder, profile = name.strip(), folder.strip(), profile.strip()
        if not name or not folder or not profile:
            raise InvalidUserConfig("name, folder and profile are required")
        if any(f.name == name and f.id != fav_id for f in self.favorites):
            raise InvalidUserConfig(f"a favorite named '{name}' already exists")
        try:
            fmt = ExportFormat.parse(format).value.upper()
        except ScannerError:
            raise InvalidUserConfig(f"unsupported format '{format}'")

        existing = [i for i, f in enumerate(self.favorites) if f.id == fav_id]
        if existing:
            favorite = Favorite(id=fav_id, name=name, folder=folder, format=fmt, profile=profile)
            self.favorites[existing[0]] = favorite
        else:
            next_id = max((f.id for f in self.favorites), default=0) + 1
            favorite = Favorite(id=next_id, name=name, folder=folder, format=fmt, profile=profile)
            self.favorites.append(favorite)
        logger.info(f"Saved favorite {favorite.id} '{favorite.name}'")
        return favorite

    def remove_favorite(self, fav_id: int) -> bool:
        before = len(self.favorites)
        self.favorites = [f for f in self.favorites if f.id != fav_id]
        return len(self.favorites) != before

    def to_dict(self) -> Dict[str, Any]:
        return {
            "favorites": [asdict(f) for f in self.favorites],
            "preferences": asdict(self.preferences),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


_FORMATS = ("PDF", "PNG", "JPG")


def sanitize_user_config(raw: Any, fallback: Optional[UserConfig] = None) -> UserConfig:
    """Validate a parsed config blob field by field.

    Malformed favorites are dropped; missing or malformed preferences fall
    back to the defaults one field at a time.
    """
    fallback = fallback or UserConfig()
    raw = raw if isinstance(raw, dict) else {}

    source = raw.get("favorites")
    if isinstance(source, list):
        favorites = []
        for index, fav in enumerate(source):
            if (
                not isinstance(fav, dict)
                or not isinstance(fav.get("name"), str)
                or not isinstance(fav.get("folder"), str)
                or fav.get("format") not in _FORMATS
                or not isinstance(fav.get("profile"), str)
            ):
                logger.debug(f"Dropping malformed favorite at index {index}")
                continue
            fav_id = fav.get("id")
            favorites.append(Favorite(
                id=fav_id if isinstance(fav_id, int) and not isinstance(fav_id, bool) else index + 1,
                name=fav["name"],
                folder=fav["folder"],
                format=fav["format"],
                profile=fav["profile"],
            ))
    else:
        favorites = list(fallback.favorites)

    prefs = raw.get("preferences")
    base = fallback.preferences
    if isinstance(prefs, dict):
        preferences = Preferences(
            default_format=prefs.get("default_format")
            if prefs.get("default_format") in _FORMATS else base.default_format,
            default_profile=prefs.get("default_profile")
            if isinstance(prefs.get("default_profile"), str) else base.default_profile,
            naming_pattern=prefs.get("naming_pattern")
            if isinstance(prefs.get("naming_pattern"), str) else base.naming_pattern,
        )
    else:
        preferences = base

    return UserConfig(favorites=favorites, preferences=preferences)


def import_user_config(text: str, current: Optional[UserConfig] = None) -> UserConfig:
    """Parse an exported settings file; missing keys are inherited from ``current``.

    Raises:
        InvalidUserConfig: if the text is not a JSON object.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidUserConfig(f"not valid JSON ({e.msg} at line {e.lineno})")
    if not isinstance(data, dict):
        raise InvalidUserConfig("expected a JSON object with favorites and preferences")
    return sanitize_user_config(data, fallback=current)


def load_user_config(path: Optional[Path] = None) -> UserConfig:
    """Read favorites/preferences from disk, falling back to defaults."""
    path = Path(path or DEFAULT_USER_CONFIG_PATH).expanduser()
    if not path.exists():
        return UserConfig()
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to read user config {path}: {e}")
        return UserConfig()
    return sanitize_user_config(data)


def save_user_config(config: UserConfig, path: Optional[Path] = None) -> Path:
    path = Path(path or DEFAULT_USER_CONFIG_PATH).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
    return path
