import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from vislam.core.map import Map
from vislam.errors import MapNotFoundError, MapSizeExceededError


class PersistenceManager:
    """
    Saves and restores the live map through a storage backend and
    autosaves it on a background timer.
    """
    def __init__(self, slam_map, storage, max_map_size=10 * 1024 * 1024, autosave_interval=30.0,
                 logger=None):
        """
        Args:
            slam_map: The live Map
            storage: A MapStorage backend
            max_map_size: Largest accepted serialized size in bytes
            autosave_interval: Seconds between autosave attempts
        """
        self.map = slam_map
        self.storage = storage
        self.max_map_size = max_map_size
        self.autosave_interval = autosave_interval
        self.logger = logger or logging.getLogger(__name__)

        self.current_map_id = None
        self.last_save_time = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='map-io')
        self._autosave_thread = None
        self._stop_event = threading.Event()

    def attach_map(self, slam_map):
        self.map = slam_map

    def save_map(self, name=None, map_id=None):
        """
        Serialize the live map and write it to storage.

        Args:
            name: Optional new map name
            map_id: Storage id; defaults to the current id, then the map's own id

        Returns:
            The id the map was stored under

        Raises:
            MapSizeExceededError: If the serialized map is larger than the cap
            StorageError: If the backend fails
        """
        with self.map.lock:
            if name:
                self.map.set_name(name)
            data = self.map.serialize()
            map_name = self.map.name
            num_keyframes = len(self.map.keyframes)

        size = len(json.dumps(data, separators=(',', ':')).encode('utf-8'))
        if size > self.max_map_size:
            raise MapSizeExceededError(size, self.max_map_size)

        map_id = map_id or self.current_map_id or self.map.id
        info = self.storage.put(map_id, map_name, data)
        self.current_map_id = map_id
        self.last_save_time = time.monotonic()
        self.logger.info("Saved map %s (%d keyframes, %d bytes%s)", map_id, num_keyframes, info.size,
                         ', compressed' if info.compressed else '')
        return map_id

    def load_map(self, map_id) -> Map:
        """
        Read and deserialize a stored map. The caller installs it as the live map.

        Raises:
            MapNotFoundError: If no map is stored under `map_id`
        """
        data = self.storage.get(map_id)
        if data is None:
            raise MapNotFoundError(map_id)
        slam_map = Map.deserialize(data, logger=self.logger)
        self.current_map_id = map_id
        self.logger.info("Loaded map %s (%d keyframes, %d map points)", map_id,
                         len(slam_map.keyframes), len(slam_map.map_points))
        return slam_map

    def save_map_async(self, name=None, map_id=None):
        """Run save_map on the I/O worker. Returns a concurrent.futures.Future."""
        return self._executor.submit(self.save_map, name, map_id)

    def load_map_async(self, map_id):
        return self._executor.submit(self.load_map, map_id)

    def delete_map(self, map_id):
        deleted = self.storage.delete(map_id)
        if self.current_map_id == map_id:
            self.current_map_id = None
        return deleted

    def list_maps(self):
        return self.storage.list()

    def get_storage_stats(self):
        return self.storage.get_stats()

    def autosave(self):
        """
        Save if the map has keyframes and the autosave interval has elapsed
        since the last save. Failures are logged, never raised.

        Returns:
            The map id if a save happened, else None
        """
        try:
            if not self.map.keyframes:
                return None
            if (self.last_save_time is not None
                    and time.monotonic() - self.last_save_time < self.autosave_interval):
                return None
            return self.save_map()
        except Exception:
            self.logger.exception("Autosave failed, retrying on next tick")
            return None

    def _run_autosave(self):
        while not self._stop_event.wait(self.autosave_interval):
            self.autosave()

    def start_autosave(self):
        if self._autosave_thread is not None and self._autosave_thread.is_alive():
            return
        self._stop_event.clear()
        self._autosave_thread = threading.Thread(target=self._run_autosave, name='map-autosave',
                                                 daemon=True)
        self._autosave_thread.start()
        self.logger.info("Autosave every %.1f s", self.autosave_interval)

    def stop_autosave(self):
        self._stop_event.set()
        if self._autosave_thread is not None:
            self._autosave_thread.join(timeout=5.0)
            self._autosave_thread = None

    def close(self):
        self.stop_autosave()
        self._executor.shutdown(wait=True)
