# cbots/storage.py
from __future__ import annotations

import logging
import os
import re
import shutil
import time
from typing import BinaryIO, Optional

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class LocalBlobStore:
    """Stores uploaded proof files on disk and returns their path as reference.

    Files land in ``<root>/<folder>/<millis>-<original name>``.
    """

    def __init__(self, root: str):
        self.root = root

    def put(self, folder: str, filename: Optional[str], stream: BinaryIO) -> str:
        safe_name = _UNSAFE.sub("_", os.path.basename(filename or "upload")) or "upload"
        target_dir = os.path.join(self.root, folder)
        os.makedirs(target_dir, exist_ok=True)

        path = os.path.join(target_dir, f"{int(time.time() * 1000)}-{safe_name}")
        with open(path, "wb") as fh:
            shutil.copyfileobj(stream, fh)
        logger.info("Stored upload %s", path)
        return path
