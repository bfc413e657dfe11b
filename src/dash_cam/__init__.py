"""Two-camera dashcam recorder.

:class:`~dash_cam.supervisor.Supervisor` runs one recording session and
watchdog per camera. :class:`~dash_cam.extraction.ClipExtractor` cuts clips
out of the recorded chunks. ``create_app`` builds the HTTP API around a
supervisor and imports FastAPI only when called.
"""

from typing import Any

from .version import APP_VERSION


def create_app(*args: Any, **kwargs: Any):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = ["APP_VERSION", "create_app"]
