"""Map persistence: storage backends and the autosaving persistence manager."""

from vislam.persistence.map_storage import (
    FileMapStorage,
    MapStorage,
    MemoryMapStorage,
    StoredMapInfo,
    create_storage,
)
from vislam.persistence.persistence_manager import PersistenceManager
