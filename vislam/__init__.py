"""
VISLAM: A monocular visual-inertial SLAM engine.

This package tracks a camera against an incrementally built map of
keyframes and 3D map points, detects revisited places and can save and
restore the map across sessions. Features (keypoints and binary
descriptors) are computed upstream and fed in per frame.

The system is organized into several modules:
- core: Core data structures (Map, MapPoint, KeyFrame) and geometry
- frontend: Descriptor matching, keyframe policy and tracking
- backend: Local mapping and loop closure detection
- inertial: IMU adapter and the visual-inertial Kalman filter
- persistence: Map storage backends and autosave
- utils: Bag-of-words database and visualization
- vocabulary: Trainable visual vocabulary
"""

from vislam.config import SLAMConfig, load_config
from vislam.system import SLAMSystem

__version__ = '0.1.0'

__all__ = ['SLAMSystem', 'SLAMConfig', 'load_config', '__version__']
