"""Local artifact store for generated audio and documents.

Artifacts are written under ``<root>/<user_id>/<name>`` and referenced by
a ``file://`` URI. Keys are sanitized so user ids and file names cannot
escape the root directory.
"""

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_part(part: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", part).strip("._")
    return cleaned or "_"


class ArtifactStore:
    """Filesystem-backed object store.

    Example:
        >>> store = ArtifactStore(Path("artifacts"))
        >>> ref = store.put("u1/news-digest-20250101.mp3", audio)
        >>> store.get("u1/news-digest-20250101.mp3") == audio
        True
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        parts = [_safe_part(p) for p in key.split("/") if p]
        if not parts:
            raise ValueError("Artifact key is empty")
        return self.root.joinpath(*parts)

    def put(self, key: str, data: bytes) -> str:
        """Write data under key and return a reference URI.

        Raises:
            OSError: If the file cannot be written
        """
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        logger.debug("Artifact stored | key=%s bytes=%d", key, len(data))
        return path.resolve().as_uri()

    def get(self, key: str) -> bytes | None:
        """Read the artifact for key, or None if missing."""
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).exists()
