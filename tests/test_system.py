from unittest.mock import Mock

import numpy as np
import pytest

from vislam import SLAMConfig, SLAMSystem
from vislam.core.geometry import quaternion_from_rotation_vector
from vislam.core.map import Map
from vislam.core.types import CameraIntrinsics, Frame, IMUMeasurement, SLAMState
from vislam.errors import PersistenceNotEnabledError
from vislam.persistence.map_storage import MemoryMapStorage
from vislam.persistence.persistence_manager import PersistenceManager

from conftest import make_frame, make_keyframe, random_descriptors


@pytest.fixture
def slam(intrinsics):
    system = SLAMSystem(SLAMConfig(), intrinsics=intrinsics)
    yield system
    system.shutdown()


class TestStateMachine:
    def test_frames_before_initialize_are_rejected(self, slam):
        result = slam.process_frame(make_frame(random_descriptors(80)))
        assert not result.success
        assert result.state == SLAMState.NOT_INITIALIZED
        assert slam.get_state() == SLAMState.NOT_INITIALIZED
        assert slam.get_current_pose() is None

    def test_initialize(self, slam):
        slam.initialize()
        assert slam.get_state() == SLAMState.INITIALIZING

    def test_initialize_needs_intrinsics_or_size(self):
        with pytest.raises(ValueError):
            SLAMSystem().initialize()

    def test_intrinsics_from_field_of_view(self):
        system = SLAMSystem()
        system.initialize(640, 480)
        assert np.isclose(system.intrinsics.fx, 320.0 / np.tan(np.deg2rad(30.0)))
        assert system.intrinsics.cx == 320.0

    def test_camera_matrix_is_accepted(self, intrinsics):
        system = SLAMSystem(intrinsics=intrinsics.matrix)
        assert system.intrinsics == CameraIntrinsics(500.0, 500.0, 320.0, 240.0)

    def test_empty_first_frame_keeps_initializing(self, slam):
        slam.initialize()
        result = slam.process_frame(Frame([], None, 0.0))
        assert not result.success
        assert slam.get_state() == SLAMState.INITIALIZING

    def test_first_frame_creates_origin_keyframe(self, slam):
        slam.initialize()
        result = slam.process_frame(make_frame(random_descriptors(80), 0.0))
        assert result.success
        assert result.state == SLAMState.TRACKING
        np.testing.assert_array_equal(result.pose.position, np.zeros(3))
        assert slam.get_stats().num_keyframes == 1

    def test_lost_and_relocalized(self, slam):
        """Frame 1 seeds the map, frame 2 shows an unknown place, frame 3 returns."""
        slam.initialize()
        descriptors = random_descriptors(60, seed=1)
        first = make_frame(descriptors, 0.0)

        assert slam.process_frame(first).state == SLAMState.TRACKING
        lost = slam.process_frame(make_frame(random_descriptors(60, seed=2), 0.1))
        assert not lost.success
        assert lost.state == SLAMState.LOST

        back = slam.process_frame(Frame(first.keypoints, descriptors, 0.2))
        assert back.success
        assert back.state == SLAMState.TRACKING
        np.testing.assert_array_equal(back.pose.position, np.zeros(3))
        assert slam.get_stats().num_keyframes == 1

    def test_tracking_within_interval_adds_no_keyframe(self, slam):
        slam.initialize()
        descriptors = random_descriptors(60, seed=1)
        slam.process_frame(make_frame(descriptors, 0.0))
        result = slam.process_frame(make_frame(descriptors, 0.1))
        assert result.success
        assert result.num_tracked_features == 60
        assert slam.get_stats().num_keyframes == 1

    def test_stats(self, slam):
        slam.initialize()
        descriptors = random_descriptors(60, seed=1)
        for i in range(3):
            slam.process_frame(make_frame(descriptors, i * 0.1))
        stats = slam.get_stats()
        assert stats.state == SLAMState.TRACKING
        assert np.isclose(stats.fps, 10.0)
        assert stats.num_tracked_features == 60
        assert stats.tracking_time >= 0.0
        assert stats.num_loop_closures == 0

    def test_reset(self, slam):
        slam.initialize()
        slam.process_frame(make_frame(random_descriptors(60), 0.0))
        slam.reset()
        assert slam.get_state() == SLAMState.INITIALIZING
        assert slam.get_stats().num_keyframes == 0

    def test_update_intrinsics(self, slam):
        slam.initialize()
        updated = CameraIntrinsics(600.0, 600.0, 320.0, 240.0)
        slam.update_intrinsics(updated)
        assert slam.tracker.intrinsics == updated
        assert slam.mapper.intrinsics == updated


class TestInertial:
    def test_imu_disabled_ignores_samples(self, slam):
        slam.initialize()
        slam.add_imu_measurement(IMUMeasurement(0.0, np.zeros(3), np.zeros(3)))
        assert slam.vio is None

    def test_unavailable_source_disables_fusion(self, intrinsics):
        source = Mock()
        source.is_available.return_value = False
        system = SLAMSystem(SLAMConfig(use_imu=True), intrinsics=intrinsics, imu_source=source)
        system.initialize()
        assert system.vio is None

    def test_pushed_samples_drive_fusion(self, intrinsics):
        system = SLAMSystem(SLAMConfig(use_imu=True), intrinsics=intrinsics)
        system.initialize()
        descriptors = random_descriptors(60, seed=1)
        system.process_frame(make_frame(descriptors, 0.0))
        for k in range(20):
            system.add_imu_measurement(IMUMeasurement(k * 0.005, [0.0, 9.81, 0.0], np.zeros(3)))
        result = system.process_frame(make_frame(descriptors, 0.1))

        assert result.success
        assert system.vio.num_predictions == 19
        assert system.vio.num_updates == 1
        assert system.get_stats().drift_estimate > 0.0


class TestPersistence:
    def test_disabled(self, slam):
        for call in (lambda: slam.save_map(), lambda: slam.load_map('x'), lambda: slam.list_maps(),
                     lambda: slam.delete_map('x'), lambda: slam.get_storage_stats()):
            with pytest.raises(PersistenceNotEnabledError):
                call()

    def test_save_and_load(self, intrinsics):
        config = SLAMConfig(enable_persistence=True, autosave_interval=3600.0)
        storage = MemoryMapStorage()
        system = SLAMSystem(config, intrinsics=intrinsics, storage=storage)
        try:
            system.initialize()
            descriptors = random_descriptors(60, seed=1)
            system.process_frame(make_frame(descriptors, 0.0))
            map_id = system.save_map(name='desk')
            assert [info.id for info in system.list_maps()] == [map_id]

            system.reset()
            assert system.get_stats().num_keyframes == 0

            loaded = system.load_map(map_id)
            assert loaded.name == 'desk'
            assert system.get_map() is loaded
            assert system.get_state() == SLAMState.TRACKING
            np.testing.assert_array_equal(system.get_current_pose().position, np.zeros(3))

            result = system.process_frame(make_frame(descriptors, 1.0))
            assert result.success
        finally:
            system.shutdown()

    def test_load_before_initialize_relocalizes(self, intrinsics):
        storage = MemoryMapStorage()
        config = SLAMConfig(enable_persistence=True, autosave_interval=3600.0)
        descriptors = random_descriptors(60, seed=1)

        first = SLAMSystem(config, intrinsics=intrinsics, storage=storage)
        first.initialize()
        first.process_frame(make_frame(descriptors, 0.0))
        map_id = first.save_map()
        first.shutdown()

        second = SLAMSystem(config, storage=storage)
        try:
            second.load_map(map_id)
            assert second.get_state() == SLAMState.NOT_INITIALIZED
            assert second.intrinsics == intrinsics
            second.initialize()
            result = second.process_frame(make_frame(descriptors, 5.0))
            assert result.success
            assert result.state == SLAMState.TRACKING
            assert second.get_stats().num_keyframes == 1
        finally:
            second.shutdown()

    def test_relocalization_into_loaded_map_seeds_filter(self, intrinsics):
        storage = MemoryMapStorage()
        descriptors = random_descriptors(60, seed=1)
        rotation = quaternion_from_rotation_vector([0.0, 0.5, 0.0])
        slam_map = Map()
        slam_map.add_keyframe(make_keyframe(descriptors, timestamp=0.0, position=(1.0, 0.0, 2.0),
                                            rotation=rotation, intrinsics=intrinsics))
        manager = PersistenceManager(slam_map, storage)
        map_id = manager.save_map()
        manager.close()

        config = SLAMConfig(use_imu=True, enable_persistence=True, autosave_interval=3600.0)
        system = SLAMSystem(config, storage=storage)
        try:
            system.load_map(map_id)
            system.initialize()
            relocalized = system.process_frame(make_frame(descriptors, 5.0))
            assert relocalized.state == SLAMState.TRACKING
            np.testing.assert_allclose(relocalized.pose.rotation, rotation)
            np.testing.assert_allclose(system.vio.get_state().orientation, rotation)

            tracked = system.process_frame(make_frame(descriptors, 5.1))
            assert tracked.state == SLAMState.TRACKING
            np.testing.assert_allclose(tracked.pose.rotation, rotation, atol=1e-12)
            np.testing.assert_allclose(tracked.pose.position, [1.0, 0.0, 2.0], atol=1e-9)
        finally:
            system.shutdown()
