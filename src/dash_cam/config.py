"""Per-camera pipeline configuration and its persistence."""
from __future__ import annotations

import json
import logging
import math
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import parse_qsl

logger = logging.getLogger(__name__)

CAMERA_IDS: tuple[int, ...] = (0, 1)

_FALSE_VALUES = {"0", "false", "no", "off", ""}

# Query keys in their canonical serialisation order.
_QUERY_KEYS: tuple[tuple[str, str], ...] = (
    ("videoWidth", "width"),
    ("videoHeight", "height"),
    ("fps", "frame_rate"),
    ("bitRate", "bit_rate"),
    ("videoLength", "chunk_length_s"),
    ("doFaceDetection", "do_face_detection"),
    ("recordAudio", "record_audio"),
    ("playSound", "play_sound"),
    ("aeRect", "ae_rect"),
    ("jpegSize", "jpeg_size"),
    ("sceneMode", "scene_mode"),
    ("effectMode", "effect_mode"),
    ("nightMode", "night_mode"),
    ("runSticky", "run_sticky"),
    ("selfTrimming", "self_trimming"),
    ("jpegQuality", "jpeg_quality"),
)

_BOOL_FIELDS = {
    "do_face_detection",
    "record_audio",
    "play_sound",
    "night_mode",
    "run_sticky",
    "self_trimming",
}
_INT_FIELDS = {
    "width",
    "height",
    "frame_rate",
    "bit_rate",
    "chunk_length_s",
    "scene_mode",
    "effect_mode",
    "jpeg_quality",
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in _FALSE_VALUES


def _format_float(value: float) -> str:
    return f"{value:g}"


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Snapshot of the recording parameters for one camera."""

    width: int = 1280
    height: int = 720
    frame_rate: int = 15
    bit_rate: int = 2_500_000
    chunk_length_s: int = 30
    record_audio: bool = False
    do_face_detection: bool = False
    play_sound: bool = False
    run_sticky: bool = True
    self_trimming: bool = True
    ae_rect: tuple[float, float, float, float] = (0.0, 0.0, 1.0, 1.0)
    jpeg_width: int = 1280
    jpeg_height: int = 720
    jpeg_quality: int = 0
    scene_mode: int = 0
    effect_mode: int = 0
    night_mode: bool = False

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Video dimensions must be positive")
        if self.frame_rate < 1 or self.frame_rate > 120:
            raise ValueError("Frame rate must be between 1 and 120 fps")
        if self.bit_rate <= 0:
            raise ValueError("Bit rate must be positive")
        if self.chunk_length_s <= 0:
            raise ValueError("Chunk length must be positive")
        if self.jpeg_width <= 0 or self.jpeg_height <= 0:
            raise ValueError("JPEG dimensions must be positive")
        if not 0 <= self.jpeg_quality <= 100:
            raise ValueError("JPEG quality must be between 0 and 100")
        rect = tuple(float(value) for value in self.ae_rect)
        if len(rect) != 4 or not all(math.isfinite(value) for value in rect):
            raise ValueError("Exposure region must have four finite values")
        object.__setattr__(self, "ae_rect", rect)

    # ------------------------------------------------------------------
    # Defaults
    # ------------------------------------------------------------------
    @classmethod
    def default_for(cls, camera_id: int) -> "PipelineConfig":
        """Return the stock configuration for *camera_id*."""

        if int(camera_id) == 1:
            return cls(do_face_detection=True)
        return cls()

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    @property
    def chunk_length_ms(self) -> int:
        return int(self.chunk_length_s) * 1000

    def to_query(self) -> str:
        """Serialise into the ``key=value&...`` command form."""

        parts: list[str] = []
        for key, attr in _QUERY_KEYS:
            if attr == "ae_rect":
                value = ",".join(_format_float(item) for item in self.ae_rect)
            elif attr == "jpeg_size":
                value = f"{self.jpeg_width}x{self.jpeg_height}"
            elif attr in _BOOL_FIELDS:
                value = "true" if getattr(self, attr) else "false"
            else:
                value = str(getattr(self, attr))
            parts.append(f"{key}={value}")
        return "&".join(parts)

    @classmethod
    def from_query(
        cls, query: str, *, base: "PipelineConfig | None" = None
    ) -> "PipelineConfig":
        """Overlay the parameters in *query* onto *base*.

        Keys that are missing or fail to parse keep the value from *base*.
        """

        text = query.split("?", 1)[1] if "?" in query else query
        params = dict(parse_qsl(text, keep_blank_values=True))
        return cls.from_params(params, base=base)

    @classmethod
    def from_params(
        cls, params: Mapping[str, Any], *, base: "PipelineConfig | None" = None
    ) -> "PipelineConfig":
        config = base if base is not None else cls()
        updates: dict[str, Any] = {}
        attr_names = dict(_QUERY_KEYS)
        for key, raw in params.items():
            attr = attr_names.get(key, key)
            if raw is None:
                continue
            try:
                if attr == "ae_rect":
                    if isinstance(raw, str):
                        values = tuple(float(item) for item in raw.split(","))
                    else:
                        values = tuple(float(item) for item in raw)
                    if len(values) != 4:
                        raise ValueError("expected four values")
                    updates["ae_rect"] = values
                elif attr == "jpeg_size":
                    width, height = str(raw).lower().split("x", 1)
                    updates["jpeg_width"] = int(width)
                    updates["jpeg_height"] = int(height)
                elif attr in _BOOL_FIELDS:
                    updates[attr] = raw if isinstance(raw, bool) else _parse_bool(str(raw))
                elif attr in _INT_FIELDS or attr in {"jpeg_width", "jpeg_height"}:
                    updates[attr] = int(raw)
                else:
                    logger.debug("Ignoring unknown pipeline parameter %s", key)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid value %r for pipeline parameter %s", raw, key)
        return replace(config, **updates)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["ae_rect"] = list(self.ae_rect)
        return data


class ConfigStore:
    """JSON backed key-value store remembering the last applied configuration."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid configuration store JSON") from exc
        if not isinstance(raw, dict):
            return {}
        return {str(key): str(value) for key, value in raw.items()}

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            try:
                data = self._load()
            except ValueError:
                logger.warning("Discarding unreadable configuration store %s", self._path)
                data = {}
            data[key] = value
            # The old file stays intact until the rename.
            staging = self._path.with_name(self._path.name + ".tmp")
            staging.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            staging.replace(self._path)

    # ------------------------------------------------------------------
    @staticmethod
    def _camera_key(camera_id: int) -> str:
        return f"camera{int(camera_id)}.config"

    def load_config(self, camera_id: int) -> PipelineConfig | None:
        """Return the last saved configuration for *camera_id*.

        ``None`` when nothing was saved or the stored entry cannot be read, in
        which case callers fall back to :meth:`PipelineConfig.default_for`.
        """

        try:
            data = self.get(self._camera_key(camera_id))
            if data is None:
                return None
            return PipelineConfig.from_query(data, base=PipelineConfig.default_for(camera_id))
        except ValueError as exc:
            logger.warning("Ignoring saved configuration for camera %s: %s", camera_id, exc)
            return None

    def save_config(self, camera_id: int, config: PipelineConfig) -> None:
        self.put(self._camera_key(camera_id), config.to_query())


__all__ = ["CAMERA_IDS", "ConfigStore", "PipelineConfig"]
