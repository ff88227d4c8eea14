"""
Getting the segmentation model onto local disk.

Provisioning is separate from loading: a provisioner only makes sure a
plausible file exists at the configured path; ``ModelManager`` decides whether
it actually loads.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import tempfile
from typing import Optional, Protocol, Sequence, Union

import requests

from .model_loader import MB, ModelManager

logger = logging.getLogger(__name__)

HEADER_BYTES = 8
CHUNK_SIZE = 1024 * 1024


class ModelProvisioner(Protocol):
    def is_present(self, path: Path) -> bool:
        ...

    def download(self, path: Path) -> bool:
        ...

    def verify_integrity(self, path: Path) -> bool:
        ...


class LocalModelProvisioner:
    """Checks the local file and, when missing, fetches it from the first URL that works."""

    def __init__(
        self,
        download_urls: Sequence[str] = (),
        timeout_seconds: float = 60.0,
        min_size_bytes: int = MB,
        session: Optional[requests.Session] = None,
    ):
        self.download_urls = list(download_urls)
        self.timeout_seconds = timeout_seconds
        self.min_size_bytes = min_size_bytes
        self._session = session or requests.Session()

    def is_present(self, path: Path) -> bool:
        path = Path(path)
        if not path.is_file():
            return False
        size = path.stat().st_size
        if size < self.min_size_bytes:
            logger.warning("Model file %s appears incomplete (size: %d bytes)", path, size)
            return False
        return self.verify_integrity(path)

    def verify_integrity(self, path: Path) -> bool:
        """Cheap check that the file header is readable."""
        try:
            with open(path, "rb") as fh:
                header = fh.read(HEADER_BYTES)
        except OSError as exc:
            logger.error("Error verifying model integrity for %s: %s", path, exc)
            return False
        if len(header) < HEADER_BYTES:
            logger.warning("Model file %s is truncated (%d header bytes)", path, len(header))
            return False
        return True

    def download(self, path: Path) -> bool:
        path = Path(path)
        if not self.download_urls:
            logger.error("No model download URLs configured for %s", path)
            return False

        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Starting model download to %s", path)
        for url in self.download_urls:
            try:
                if self._fetch(url, path):
                    logger.info("Downloaded model from %s to %s", url, path)
                    return True
            except (requests.RequestException, OSError) as exc:
                logger.warning("Error downloading model from %s: %s", url, exc)

        logger.error("All download attempts failed for model %s", path)
        return False

    def _fetch(self, url: str, path: Path) -> bool:
        logger.info("Attempting to download model from %s", url)
        with self._session.get(url, stream=True, timeout=(5, self.timeout_seconds)) as resp:
            if resp.status_code != 200:
                logger.warning("Failed to download model from %s: HTTP %s", url, resp.status_code)
                return False
            logger.info("Downloading model (%s bytes)", resp.headers.get("Content-Length", "unknown"))

            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".part")
            try:
                with os.fdopen(fd, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
                    fh.flush()
                    os.fsync(fh.fileno())
                if not self.verify_integrity(Path(tmp_name)):
                    os.unlink(tmp_name)
                    return False
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        return True


def ensure_model(
    manager: ModelManager,
    provisioner: ModelProvisioner,
    model_path: Union[str, Path],
) -> bool:
    """Download the model when missing, then (re)load it into the manager."""
    path = Path(model_path)
    if not provisioner.is_present(path):
        logger.info("Model not present at %s; provisioning", path)
        if not provisioner.download(path):
            return False
    return manager.initialize(path)
