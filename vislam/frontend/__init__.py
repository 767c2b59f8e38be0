"""Frontend: descriptor matching, keyframe policy and tracking."""

from vislam.frontend.feature_matcher import FeatureMatch, FeatureMatcher
from vislam.frontend.keyframe_manager import KeyframeManager
from vislam.frontend.tracking import Tracker
