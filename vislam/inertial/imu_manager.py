import logging
import threading

import numpy as np

from vislam.core.types import IMUMeasurement

GRAVITY_MAGNITUDE = 9.81
DEFAULT_CALIBRATION_SAMPLES = 100


class IMUManager:
    """
    Adapter between an IMU source and the filter.

    A source is any object with ``is_available()``, ``subscribe(callback)``
    and optionally ``unsubscribe(callback)``; it calls back with raw
    IMUMeasurement objects. Samples can also be pushed with
    ``handle_sample``. Bias-corrected measurements are published to the
    registered listeners.
    """
    def __init__(self, frequency=200.0, calibration_samples=DEFAULT_CALIBRATION_SAMPLES, logger=None):
        self.frequency = frequency
        self.calibration_samples = calibration_samples
        self.logger = logger or logging.getLogger(__name__)

        self.gyro_bias = np.zeros(3)
        self.accel_bias = np.zeros(3)
        self.is_calibrated = False
        self.is_calibrating = False
        self.latest_measurement = None
        self.source = None

        self._calibration_buffer = []
        self._listeners = []
        self._lock = threading.Lock()

    def start(self, source):
        """
        Subscribe to an IMU source.

        Returns:
            False if the source is missing or reports itself unavailable
        """
        if source is None or not source.is_available():
            self.logger.warning("IMU source unavailable, continuing without inertial data")
            return False
        source.subscribe(self.handle_sample)
        self.source = source
        self.logger.info("IMU started at %.0f Hz", self.frequency)
        return True

    def stop(self):
        if self.source is not None and hasattr(self.source, 'unsubscribe'):
            self.source.unsubscribe(self.handle_sample)
        self.source = None

    def add_listener(self, callback):
        self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def start_calibration(self):
        """Use the next `calibration_samples` samples (device at rest) to estimate biases."""
        with self._lock:
            self._calibration_buffer = []
            self.is_calibrating = True

    def calibrate(self, samples):
        """
        Estimate biases from samples taken while the device is stationary.

        The gyro bias is the mean angular velocity. The accelerometer bias is
        the mean specific force minus a gravity reaction of 9.81 m/s^2 along
        the mean direction, so corrected samples keep measuring gravity.

        Returns:
            (gyro_bias, accel_bias)
        """
        if not samples:
            raise ValueError("Calibration needs at least one sample")
        gyro = np.mean([s.angular_velocity for s in samples], axis=0)
        accel = np.mean([s.acceleration for s in samples], axis=0)
        norm = np.linalg.norm(accel)
        gravity = accel / norm * GRAVITY_MAGNITUDE if norm > 0 else np.zeros(3)
        self.set_biases(gyro, accel - gravity)
        self.is_calibrated = True
        self.logger.info("IMU calibrated: gyro bias %s, accel bias %s",
                         np.round(self.gyro_bias, 5), np.round(self.accel_bias, 4))
        return self.gyro_bias.copy(), self.accel_bias.copy()

    def handle_sample(self, measurement: IMUMeasurement):
        """Consume one raw sample; publishes it bias-corrected unless calibrating."""
        with self._lock:
            if self.is_calibrating:
                self._calibration_buffer.append(measurement)
                if len(self._calibration_buffer) < self.calibration_samples:
                    return
                samples, self._calibration_buffer = self._calibration_buffer, []
                self.is_calibrating = False
                self.calibrate(samples)
                return

            corrected = IMUMeasurement(
                timestamp=measurement.timestamp,
                acceleration=measurement.acceleration - self.accel_bias,
                angular_velocity=measurement.angular_velocity - self.gyro_bias,
            )
            self.latest_measurement = corrected
            listeners = list(self._listeners)

        for callback in listeners:
            callback(corrected)

    def get_latest_measurement(self):
        return self.latest_measurement

    def set_biases(self, gyro_bias, accel_bias):
        self.gyro_bias = np.array(gyro_bias, dtype=np.float64)
        self.accel_bias = np.array(accel_bias, dtype=np.float64)

    def get_biases(self):
        return self.gyro_bias.copy(), self.accel_bias.copy()
