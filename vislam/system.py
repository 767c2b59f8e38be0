import logging
import threading
import time

import numpy as np

from vislam.backend.loop_closing import LoopClosureDetector
from vislam.backend.mapping import Mapper
from vislam.config import SLAMConfig, load_config
from vislam.core.map import DEFAULT_INTRINSICS, Map
from vislam.core.types import CameraIntrinsics, CameraPose, SLAMState, SLAMStats, TrackingResult
from vislam.errors import PersistenceNotEnabledError
from vislam.frontend.keyframe_manager import KeyframeManager
from vislam.frontend.tracking import Tracker
from vislam.inertial.vio_manager import VIOManager
from vislam.persistence.map_storage import create_storage
from vislam.persistence.persistence_manager import PersistenceManager
from vislam.vocabulary.vocabulary import Vocabulary

FPS_SMOOTHING = 0.1


class SLAMSystem:
    """
    Main SLAM system class that coordinates all components.

    States: not-initialized -> initializing -> tracking <-> lost.
    """

    def __init__(self, config=None, intrinsics=None, imu_source=None, storage=None, logger=None):
        """
        Initialize the SLAM system.

        Args:
            config: SLAMConfig, or a path to a YAML settings file (optional)
            intrinsics: CameraIntrinsics, or a 3x3 camera matrix (optional until initialize)
            imu_source: Object delivering IMUMeasurements when IMU is enabled (optional)
            storage: MapStorage backend overriding the configured one (optional)
            logger: Logger for the system and its components
        """
        if config is None:
            config = SLAMConfig()
        elif not isinstance(config, SLAMConfig):
            config = load_config(config)
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        if intrinsics is not None and not isinstance(intrinsics, CameraIntrinsics):
            intrinsics = CameraIntrinsics.from_matrix(intrinsics)
        self.intrinsics = intrinsics
        self.imu_source = imu_source

        self.state = SLAMState.NOT_INITIALIZED
        self._lock = threading.RLock()  # Serializes the frame pipeline and map replacement

        self.map = Map(name=config.map_name, logger=self.logger.getChild('map'))
        self.tracker = None
        self.mapper = None
        self.loop_detector = None
        self.vio = None

        self.persistence = None
        if config.enable_persistence:
            storage = storage or create_storage(config.storage_dir, logger=self.logger.getChild('storage'))
            self.persistence = PersistenceManager(self.map, storage, max_map_size=config.max_map_size,
                                                  autosave_interval=config.autosave_interval,
                                                  logger=self.logger.getChild('persistence'))

        self._stats = SLAMStats()
        self._last_frame_timestamp = None

    def _build_pipeline(self):
        """(Re)create tracker, loop detector and mapper around the current map."""
        config = self.config
        self.tracker = Tracker(self.map, self.intrinsics, min_matches=config.min_feature_tracked,
                               max_reprojection_error=config.max_reprojection_error,
                               min_observations=config.min_observations,
                               logger=self.logger.getChild('tracker'))

        self.loop_detector = None
        if config.enable_loop_closure:
            vocabulary = Vocabulary.load(config.vocabulary_path) if config.vocabulary_path else None
            self.loop_detector = LoopClosureDetector(
                min_interval=config.loop_closure_min_interval,
                similarity_threshold=config.loop_closure_threshold,
                num_threads=config.local_mapping_threads,
                vocabulary=vocabulary,
                logger=self.logger.getChild('loop_closing'))

        keyframe_manager = KeyframeManager(translation_threshold=config.min_keyframe_translation,
                                           rotation_threshold=config.min_keyframe_rotation,
                                           min_interval=config.min_keyframe_interval,
                                           max_keyframes=config.max_keyframes,
                                           logger=self.logger.getChild('keyframes'))
        self.mapper = Mapper(self.map, keyframe_manager, self.intrinsics, loop_detector=self.loop_detector,
                             max_features=config.max_features, max_keyframes=config.max_keyframes,
                             min_observations=config.min_observations,
                             max_reprojection_error=config.max_reprojection_error,
                             max_mapping_time=config.max_mapping_time,
                             enable_triangulation=config.enable_triangulation,
                             logger=self.logger.getChild('mapping'))
        self.mapper.reset()  # Register keyframes already in the map (after a load)

    def initialize(self, width=None, height=None, intrinsics=None):
        """
        Prepare the pipeline. Intrinsics default to the ones given at
        construction, or are estimated from the image size and field of view.

        Args:
            width: Image width in pixels
            height: Image height in pixels
            intrinsics: CameraIntrinsics or 3x3 camera matrix
        """
        with self._lock:
            if intrinsics is not None:
                if not isinstance(intrinsics, CameraIntrinsics):
                    intrinsics = CameraIntrinsics.from_matrix(intrinsics)
                self.intrinsics = intrinsics
            elif self.intrinsics is None:
                if width is None or height is None:
                    raise ValueError("initialize() needs intrinsics or the image size")
                self.intrinsics = CameraIntrinsics.from_fov(width, height, self.config.camera_fov)

            self._build_pipeline()

            if self.config.use_imu:
                self.vio = VIOManager.from_config(self.config, logger=self.logger.getChild('vio'))
                if not self.vio.initialize(self.imu_source):
                    self.vio = None

            if self.persistence is not None:
                self.persistence.start_autosave()

            self.state = SLAMState.INITIALIZING
            self.logger.info("SLAM initialized (fx=%.1f, imu=%s, loop closure=%s, persistence=%s)",
                             self.intrinsics.fx, self.vio is not None,
                             self.config.enable_loop_closure, self.persistence is not None)

    def process_frame(self, frame) -> TrackingResult:
        """
        Process a new frame.

        Args:
            frame: Frame with keypoints, descriptors and timestamp

        Returns:
            TrackingResult carrying the system state after the frame
        """
        with self._lock:
            if self.state == SLAMState.NOT_INITIALIZED:
                return TrackingResult(success=False, pose=CameraPose(timestamp=frame.timestamp),
                                      state=self.state, reason='system not initialized')

            start = time.perf_counter()
            mapping_time = 0.0

            if self.state == SLAMState.INITIALIZING:
                result = self._initialize_map(frame)
            elif self.state == SLAMState.TRACKING:
                result = self.tracker.track_frame(frame)
                if result.success:
                    if self.vio is not None:
                        fused = self.vio.fuse_pose(result.pose)
                        self.tracker.update_pose(fused)
                        result.pose = fused
                    map_start = time.perf_counter()
                    self.mapper.try_create_keyframe(frame, result.pose, result.num_tracked_features)
                    mapping_time = (time.perf_counter() - map_start) * 1000.0
                else:
                    self.state = SLAMState.LOST
                    self.logger.warning("Tracking lost: %s", result.reason)
            else:
                result = self.tracker.relocalize(frame)
                if result.success:
                    self.state = SLAMState.TRACKING
                    if self.vio is not None:
                        self.vio.reset(result.pose)

            result.state = self.state
            tracking_time = (time.perf_counter() - start) * 1000.0 - mapping_time
            self._update_stats(frame, result, tracking_time, mapping_time)
            return result

    def _initialize_map(self, frame):
        if self.map.keyframes:
            # A map loaded before initialize(): localize in it instead of starting a new one
            result = self.tracker.relocalize(frame)
            if result.success:
                self.state = SLAMState.TRACKING
                if self.vio is not None:
                    self.vio.reset(result.pose)
            return result

        if len(frame.descriptors) == 0:
            return TrackingResult(success=False, pose=CameraPose(timestamp=frame.timestamp),
                                  state=self.state, reason='first frame has no features')

        keyframe = self.mapper.initialize_map(frame)
        pose = CameraPose(position=keyframe.pose.position.copy(), rotation=keyframe.pose.rotation.copy(),
                          timestamp=frame.timestamp)
        self.tracker.update_pose(pose)
        if self.vio is not None:
            self.vio.reset(pose)
        self.state = SLAMState.TRACKING
        return TrackingResult(success=True, pose=pose.copy(), state=self.state,
                              num_tracked_features=len(keyframe.features),
                              num_inliers=len(keyframe.features), reprojection_error=0.0)

    def _update_stats(self, frame, result, tracking_time, mapping_time):
        stats = self._stats
        if self._last_frame_timestamp is not None:
            dt = frame.timestamp - self._last_frame_timestamp
            if dt > 0:
                instant = 1.0 / dt
                stats.fps = instant if stats.fps == 0 else (
                    (1 - FPS_SMOOTHING) * stats.fps + FPS_SMOOTHING * instant)
        self._last_frame_timestamp = frame.timestamp

        stats.num_tracked_features = result.num_tracked_features
        stats.tracking_time = tracking_time
        stats.mapping_time = mapping_time

    def add_imu_measurement(self, measurement):
        """Feed one IMU sample; ignored when visual-inertial fusion is off."""
        if self.vio is not None:
            self.vio.add_imu_measurement(measurement)

    def get_state(self):
        return self.state

    def get_current_pose(self):
        if self.tracker is None:
            return None
        return self.tracker.get_current_pose()

    def get_map(self):
        return self.map

    def get_loop_closures(self):
        return self.mapper.get_loop_closures() if self.mapper is not None else []

    def get_stats(self) -> SLAMStats:
        with self._lock:
            map_stats = self.map.get_stats()
            stats = self._stats
            stats.state = self.state
            stats.num_keyframes = map_stats['num_keyframes']
            stats.num_map_points = map_stats['num_map_points']
            stats.num_loop_closures = len(self.get_loop_closures())
            if self.vio is not None:
                stats.drift_estimate = float(np.linalg.norm(self.vio.ekf.get_position_uncertainty()))
            return SLAMStats(**vars(stats))

    def update_intrinsics(self, intrinsics):
        if not isinstance(intrinsics, CameraIntrinsics):
            intrinsics = CameraIntrinsics.from_matrix(intrinsics)
        with self._lock:
            self.intrinsics = intrinsics
            if self.tracker is not None:
                self.tracker.update_intrinsics(intrinsics)
            if self.mapper is not None:
                self.mapper.update_intrinsics(intrinsics)

    def _require_persistence(self, operation):
        if self.persistence is None:
            raise PersistenceNotEnabledError(operation)
        return self.persistence

    def save_map(self, name=None, map_id=None):
        """Save the live map. Returns the storage id."""
        return self._require_persistence('save map').save_map(name, map_id)

    def save_map_async(self, name=None, map_id=None):
        """Save on the persistence worker thread. Returns a Future."""
        return self._require_persistence('save map').save_map_async(name, map_id)

    def load_map(self, map_id):
        """
        Replace the live map with a stored one and resume tracking from its
        last keyframe.
        """
        persistence = self._require_persistence('load map')
        loaded = persistence.load_map(map_id)
        with self._lock:
            self.map = loaded
            persistence.attach_map(loaded)
            last_keyframe = loaded.get_last_keyframe()
            if self.intrinsics is None:
                self.intrinsics = last_keyframe.intrinsics if last_keyframe is not None else DEFAULT_INTRINSICS
            self._last_frame_timestamp = None
            if self.state == SLAMState.NOT_INITIALIZED:
                # initialize() builds the pipeline; the first frame then relocalizes
                return loaded

            self._build_pipeline()
            if last_keyframe is not None:
                pose = CameraPose(position=last_keyframe.pose.position.copy(),
                                  rotation=last_keyframe.pose.rotation.copy(),
                                  timestamp=last_keyframe.timestamp)
                self.tracker.update_pose(pose)
                if self.vio is not None:
                    self.vio.reset(pose)
                self.state = SLAMState.TRACKING
            else:
                self.state = SLAMState.INITIALIZING
        return loaded

    def delete_map(self, map_id):
        return self._require_persistence('delete map').delete_map(map_id)

    def list_maps(self):
        return self._require_persistence('list maps').list_maps()

    def get_storage_stats(self):
        return self._require_persistence('get storage stats').get_storage_stats()

    def reset(self):
        """Drop the map and start over from the first frame."""
        with self._lock:
            self.map.clear()
            if self.state != SLAMState.NOT_INITIALIZED:
                self._build_pipeline()
                if self.vio is not None:
                    self.vio.reset()
                self.state = SLAMState.INITIALIZING
            self._stats = SLAMStats()
            self._last_frame_timestamp = None

    def shutdown(self):
        """Shutdown the SLAM system."""
        if self.persistence is not None:
            self.persistence.close()
        if self.vio is not None:
            self.vio.destroy()
        self.logger.info("SLAM system has been shut down.")
