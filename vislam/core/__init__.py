"""Core data structures: Map, KeyFrame, MapPoint and shared value types."""

from vislam.core.keyframe import KeyFrame, KeyframeFeature, KeyframePose
from vislam.core.map import Map
from vislam.core.map_point import MapPoint, TrackingQuality
from vislam.core.types import (
    CameraIntrinsics,
    CameraPose,
    Frame,
    IMUMeasurement,
    Keypoint,
    LoopClosureCandidate,
    SLAMState,
    SLAMStats,
    TrackingResult,
)
