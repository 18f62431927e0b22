"""Object storage for session audio artifacts.

`ArtifactStore` is the collaborator contract: accept a blob at a path
namespaced by session and unit id, return the reference path. The local
filesystem implementation is what the gateway ships with.
"""

from __future__ import annotations

import os
from pathlib import Path


class ArtifactStoreError(RuntimeError):
    pass


class ArtifactStore:
    def put(self, path: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError


class FileArtifactStore(ArtifactStore):
    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _target(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root != target and self.root not in target.parents:
            raise ArtifactStoreError("artifact path escapes storage root")
        return target

    def put(self, path: str, data: bytes, content_type: str) -> str:
        target = self._target(path)
        if target.exists():
            raise ArtifactStoreError("artifact already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
        return path
