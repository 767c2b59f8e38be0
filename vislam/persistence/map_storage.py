"""
Key-value storage backends for serialized maps.

Both backends accept the serialized map as a JSON-compatible dict, encode
it as JSON and gzip it when it is larger than the compression threshold.
"""

import abc
import gzip
import json
import logging
import os
import re
import shutil
import tempfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vislam.errors import StorageError

STORAGE_VERSION = '1.0'
COMPRESSION_THRESHOLD = 100 * 1024  # bytes
MEMORY_STORAGE_LIMIT = 5 * 1024 * 1024  # bytes

_MAP_ID_PATTERN = re.compile(r'^[A-Za-z0-9_\-]+$')


@dataclass
class StoredMapInfo:
    id: str
    name: str
    timestamp: float
    version: str
    size: int
    compressed: bool


def encode_blob(blob, enable_compression=True, threshold=COMPRESSION_THRESHOLD) -> Tuple[bytes, bool]:
    """JSON-encode a blob, gzip-compressing it above the threshold."""
    data = json.dumps(blob, separators=(',', ':')).encode('utf-8')
    if enable_compression and len(data) > threshold:
        return gzip.compress(data), True
    return data, False


def decode_blob(data: bytes, compressed: bool):
    try:
        if compressed:
            data = gzip.decompress(data)
        return json.loads(data.decode('utf-8'))
    except (OSError, ValueError) as e:
        raise StorageError(f"Stored map could not be decoded: {e}") from e


def validate_map_id(map_id):
    if not isinstance(map_id, str) or not _MAP_ID_PATTERN.match(map_id):
        raise StorageError(f"Invalid map id: {map_id!r}")
    return map_id


class MapStorage(abc.ABC):
    """Contract every map storage backend implements."""

    storage_type = 'abstract'

    def __init__(self, enable_compression=True, compression_threshold=COMPRESSION_THRESHOLD, logger=None):
        self.enable_compression = enable_compression
        self.compression_threshold = compression_threshold
        self.logger = logger or logging.getLogger(__name__)

    @abc.abstractmethod
    def put(self, map_id, name, blob) -> StoredMapInfo:
        """Store a serialized map, replacing any map with the same id."""

    @abc.abstractmethod
    def get(self, map_id) -> Optional[dict]:
        """Return the serialized map, or None if absent."""

    @abc.abstractmethod
    def delete(self, map_id) -> bool:
        """Remove a map. Returns False if it did not exist."""

    @abc.abstractmethod
    def list(self) -> List[StoredMapInfo]:
        """Metadata of every stored map, newest first."""

    @abc.abstractmethod
    def available_bytes(self) -> int:
        pass

    def clear(self):
        for info in self.list():
            self.delete(info.id)

    def get_stats(self) -> Dict[str, object]:
        maps = self.list()
        return {
            'storage_type': self.storage_type,
            'num_maps': len(maps),
            'used_bytes': sum(info.size for info in maps),
            'available_bytes': self.available_bytes(),
        }

    def _check_version(self, info: StoredMapInfo):
        if info.version != STORAGE_VERSION:
            self.logger.warning("Stored map %s has storage version %s, expected %s",
                                info.id, info.version, STORAGE_VERSION)


class MemoryMapStorage(MapStorage):
    """Small synchronous in-process store with a fixed byte budget."""

    storage_type = 'memory'

    def __init__(self, max_size=MEMORY_STORAGE_LIMIT, **kwargs):
        super().__init__(**kwargs)
        self.max_size = max_size
        self._maps: Dict[str, Tuple[StoredMapInfo, bytes]] = {}
        self._lock = threading.Lock()

    def put(self, map_id, name, blob):
        validate_map_id(map_id)
        data, compressed = encode_blob(blob, self.enable_compression, self.compression_threshold)
        with self._lock:
            used = sum(info.size for mid, (info, _) in self._maps.items() if mid != map_id)
            if used + len(data) > self.max_size:
                raise StorageError(
                    f"Memory storage full: {used + len(data)} bytes exceeds {self.max_size}")
            info = StoredMapInfo(map_id, name, time.time(), STORAGE_VERSION, len(data), compressed)
            self._maps[map_id] = (info, data)
        return info

    def get(self, map_id):
        with self._lock:
            entry = self._maps.get(map_id)
        if entry is None:
            return None
        info, data = entry
        self._check_version(info)
        return decode_blob(data, info.compressed)

    def delete(self, map_id):
        with self._lock:
            return self._maps.pop(map_id, None) is not None

    def list(self):
        with self._lock:
            infos = [info for info, _ in self._maps.values()]
        return sorted(infos, key=lambda info: info.timestamp, reverse=True)

    def available_bytes(self):
        with self._lock:
            used = sum(info.size for info, _ in self._maps.values())
        return max(0, self.max_size - used)


class FileMapStorage(MapStorage):
    """
    Large-capacity store keeping one data file and one metadata file per map
    in a directory. Files are written atomically.
    """

    storage_type = 'file'

    def __init__(self, root, **kwargs):
        super().__init__(**kwargs)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _data_path(self, map_id):
        return self.root / f"{map_id}.map"

    def _meta_path(self, map_id):
        return self.root / f"{map_id}.meta.json"

    def _write_atomic(self, path, data: bytes):
        fd, tmp_path = tempfile.mkstemp(dir=str(self.root), prefix='.tmp-')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def put(self, map_id, name, blob):
        validate_map_id(map_id)
        data, compressed = encode_blob(blob, self.enable_compression, self.compression_threshold)
        info = StoredMapInfo(map_id, name, time.time(), STORAGE_VERSION, len(data), compressed)
        try:
            self._write_atomic(self._data_path(map_id), data)
            self._write_atomic(self._meta_path(map_id), json.dumps(asdict(info)).encode('utf-8'))
        except OSError as e:
            raise StorageError(f"Failed to write map {map_id}: {e}") from e
        return info

    def _read_info(self, map_id) -> Optional[StoredMapInfo]:
        meta_path = self._meta_path(map_id)
        if not meta_path.exists():
            return None
        try:
            return StoredMapInfo(**json.loads(meta_path.read_text(encoding='utf-8')))
        except (OSError, ValueError, TypeError) as e:
            raise StorageError(f"Corrupted metadata for map {map_id}: {e}") from e

    def get(self, map_id):
        validate_map_id(map_id)
        info = self._read_info(map_id)
        if info is None:
            return None
        try:
            data = self._data_path(map_id).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read map {map_id}: {e}") from e
        self._check_version(info)
        return decode_blob(data, info.compressed)

    def delete(self, map_id):
        validate_map_id(map_id)
        existed = False
        for path in (self._data_path(map_id), self._meta_path(map_id)):
            if path.exists():
                path.unlink()
                existed = True
        return existed

    def list(self):
        infos = []
        for meta_path in self.root.glob('*.meta.json'):
            info = self._read_info(meta_path.name[:-len('.meta.json')])
            if info is not None:
                infos.append(info)
        return sorted(infos, key=lambda info: info.timestamp, reverse=True)

    def available_bytes(self):
        return shutil.disk_usage(str(self.root)).free


def create_storage(storage_dir=None, logger=None) -> MapStorage:
    """
    Pick a storage backend: a directory store when `storage_dir` is usable,
    otherwise the in-memory store.
    """
    logger = logger or logging.getLogger(__name__)
    if storage_dir:
        try:
            return FileMapStorage(storage_dir, logger=logger)
        except OSError as e:
            logger.warning("Map directory %s unusable (%s), falling back to memory storage",
                           storage_dir, e)
    return MemoryMapStorage(logger=logger)
