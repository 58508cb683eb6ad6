import importlib
import io
import os
import sys
import tempfile
from pathlib import Path

from werkzeug.datastructures import FileStorage

FADEDROP_MODULES = [
    "fadedrop.app",
    "fadedrop.lifecycle",
    "fadedrop.expiration",
    "fadedrop.security",
    "fadedrop.records",
    "fadedrop.storage",
]


def purge_fadedrop_modules() -> None:
    for module in FADEDROP_MODULES:
        sys.modules.pop(module, None)


def make_upload(filename: str, payload: bytes = b"media-bytes", content_type: str = "application/octet-stream") -> FileStorage:
    return FileStorage(stream=io.BytesIO(payload), filename=filename, content_type=content_type)


class IsolatedStorageMixin:
    """Point every FadeDrop directory at a temporary root and re-import the package."""

    extra_env: dict = {}

    def setUp(self):
        super().setUp()
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        env = {
            "FADEDROP_STORAGE_ROOT": str(root),
            "FADEDROP_DATA_DIR": str(root / "data"),
            "FADEDROP_UPLOADS_DIR": str(root / "uploads"),
            "FADEDROP_LOGS_DIR": str(root / "logs"),
            "FADEDROP_SCHEDULER_ENABLED": "0",
            "FADEDROP_RATELIMIT_ENABLED": "0",
            "FADEDROP_ENABLE_MINUTES_UNIT": "1",
            "SESSION_COOKIE_SECURE": "0",
            "SECRET_KEY": "test-secret-key",
        }
        env.update(self.extra_env)
        self._saved_env = {key: os.environ.get(key) for key in env}
        os.environ.update(env)
        self.uploads_dir = (root / "uploads").resolve()
        purge_fadedrop_modules()

    def tearDown(self):
        for key, value in self._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        purge_fadedrop_modules()
        self.storage_dir.cleanup()
        super().tearDown()

    def load(self, module: str):
        return importlib.import_module(module)

    def stored_files(self):
        return sorted(path for path in self.uploads_dir.rglob("*") if path.is_file())
