"""Backend: local mapping and loop closure detection."""

from vislam.backend.loop_closing import LoopClosureDetector
from vislam.backend.mapping import Mapper
