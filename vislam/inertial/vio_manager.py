import logging

import numpy as np

from vislam.core.types import CameraPose
from vislam.inertial.ekf import EKFState, ExtendedKalmanFilter, ProcessNoise
from vislam.inertial.imu_manager import IMUManager

IMU_MAX_TIME_DELTA = 1.0  # seconds, longer gaps are not integrated


class VIOManager:
    """
    Visual-inertial odometry: IMU samples drive EKF predictions and tracked
    visual poses drive EKF position updates.
    """
    def __init__(self, imu_frequency=200.0, accelerometer_noise=0.1, gyroscope_noise=0.01,
                 calibration_samples=100, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.ekf = ExtendedKalmanFilter(
            process_noise=ProcessNoise(velocity=accelerometer_noise, orientation=gyroscope_noise),
            logger=self.logger.getChild('ekf'))
        self.imu_manager = IMUManager(frequency=imu_frequency, calibration_samples=calibration_samples,
                                      logger=self.logger.getChild('imu'))
        self.imu_manager.add_listener(self._on_measurement)

        self.last_imu_timestamp = None
        self.last_angular_velocity = np.zeros(3)
        self.num_predictions = 0
        self.num_updates = 0

    @classmethod
    def from_config(cls, config, logger=None):
        return cls(imu_frequency=config.imu_frequency, accelerometer_noise=config.accelerometer_noise,
                   gyroscope_noise=config.gyroscope_noise, logger=logger)

    def initialize(self, imu_source=None, calibrate=True):
        """
        Attach an IMU source, if any.

        Args:
            imu_source: Object delivering IMUMeasurements; None when samples are pushed
            calibrate: Estimate biases from the first samples of the source

        Returns:
            False if a source was given but is not available
        """
        if imu_source is None:
            return True
        if not self.imu_manager.start(imu_source):
            return False
        if calibrate:
            self.imu_manager.start_calibration()
        return True

    def add_imu_measurement(self, measurement):
        self.imu_manager.handle_sample(measurement)

    def _on_measurement(self, measurement):
        if self.last_imu_timestamp is None:
            self.last_imu_timestamp = measurement.timestamp
            return
        dt = measurement.timestamp - self.last_imu_timestamp
        self.last_imu_timestamp = measurement.timestamp
        if dt <= 0 or dt > IMU_MAX_TIME_DELTA:
            self.logger.debug("Skipping IMU sample with dt=%.4f s", dt)
            return
        if self.ekf.predict(measurement.angular_velocity, measurement.acceleration, dt):
            self.last_angular_velocity = measurement.angular_velocity
            self.num_predictions += 1

    def fuse_pose(self, visual_pose: CameraPose) -> CameraPose:
        """
        Correct the filter with a visual pose and return the fused estimate.
        If the update is rejected the visual pose is returned unchanged.
        """
        if not self.ekf.update(visual_pose.position):
            return visual_pose.copy()
        self.num_updates += 1
        state = self.ekf.get_state()
        return CameraPose(position=state.position, rotation=state.orientation, velocity=state.velocity,
                          angular_velocity=self.last_angular_velocity - state.gyro_bias,
                          timestamp=visual_pose.timestamp)

    def reset(self, pose=None):
        """Restart the filter, optionally at a given camera pose."""
        if pose is None:
            self.ekf.reset()
        else:
            self.ekf.reset(EKFState(position=pose.position, velocity=pose.velocity,
                                    orientation=pose.rotation, timestamp=pose.timestamp))
        self.last_imu_timestamp = None
        self.last_angular_velocity = np.zeros(3)

    def get_state(self):
        return self.ekf.get_state()

    def get_stats(self):
        return {
            'num_predictions': self.num_predictions,
            'num_updates': self.num_updates,
            'position_uncertainty': self.ekf.get_position_uncertainty().tolist(),
            'calibrated': self.imu_manager.is_calibrated,
        }

    def destroy(self):
        self.imu_manager.stop()
