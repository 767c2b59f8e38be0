"""
Extended Kalman filter fusing IMU prediction with visual position updates.

The nominal state holds position, velocity, an orientation quaternion and
the gyroscope and accelerometer biases. The 15x15 covariance is kept over
the error state [position(3), velocity(3), rotation vector(3),
gyro bias(3), accel bias(3)]; orientation corrections are composed onto
the quaternion as small rotations.
"""

import logging
import threading
from dataclasses import dataclass, field

import numpy as np

from vislam.core.geometry import (
    identity_quaternion,
    normalize_quaternion,
    quaternion_from_angular_velocity,
    quaternion_from_rotation_vector,
    quaternion_multiply,
    rotate_vector,
)

STATE_DIM = 15
POS = slice(0, 3)
VEL = slice(3, 6)
ROT = slice(6, 9)
GYRO_BIAS = slice(9, 12)
ACCEL_BIAS = slice(12, 15)

GRAVITY = (0.0, -9.81, 0.0)
MAX_CONDITION_NUMBER = 1e12


@dataclass
class EKFState:
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    orientation: np.ndarray = field(default_factory=identity_quaternion)
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    accel_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    timestamp: float = 0.0

    def __post_init__(self):
        self.position = np.array(self.position, dtype=np.float64)
        self.velocity = np.array(self.velocity, dtype=np.float64)
        self.orientation = normalize_quaternion(self.orientation)
        self.gyro_bias = np.array(self.gyro_bias, dtype=np.float64)
        self.accel_bias = np.array(self.accel_bias, dtype=np.float64)

    def copy(self):
        return EKFState(self.position.copy(), self.velocity.copy(), self.orientation.copy(),
                        self.gyro_bias.copy(), self.accel_bias.copy(), self.timestamp)


@dataclass
class ProcessNoise:
    position: float = 0.01
    velocity: float = 0.1
    orientation: float = 0.01
    gyro_bias: float = 1e-4
    accel_bias: float = 1e-3


@dataclass
class MeasurementNoise:
    position: float = 0.01
    velocity: float = 0.1


@dataclass
class IMUNoise:
    gyro_bias_drift: float = 1e-5
    accel_bias_drift: float = 1e-4


class ExtendedKalmanFilter:
    """
    Visual-inertial EKF. Every public method holds the filter lock, so
    sensor-rate predictions and camera-rate updates may come from
    different threads.
    """
    def __init__(self, initial_state=None, process_noise=None, measurement_noise=None, imu_noise=None,
                 gravity=GRAVITY, initial_uncertainty=0.1, logger=None):
        self.process_noise = process_noise or ProcessNoise()
        self.measurement_noise = measurement_noise or MeasurementNoise()
        self.imu_noise = imu_noise or IMUNoise()
        self.gravity = np.array(gravity, dtype=np.float64)
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.RLock()
        self.state = EKFState() if initial_state is None else initial_state.copy()
        self.covariance = np.eye(STATE_DIM) * initial_uncertainty

    def _process_noise(self, dt):
        dt2 = dt * dt
        diagonal = np.empty(STATE_DIM)
        diagonal[POS] = self.process_noise.position * dt2
        diagonal[VEL] = self.process_noise.velocity * dt2
        diagonal[ROT] = self.process_noise.orientation * dt2
        diagonal[GYRO_BIAS] = self.imu_noise.gyro_bias_drift * dt
        diagonal[ACCEL_BIAS] = self.imu_noise.accel_bias_drift * dt
        return np.diag(diagonal)

    def predict(self, gyro, accel, dt):
        """
        Propagate the state with one IMU sample.

        Args:
            gyro: Angular velocity (rad/s), device frame
            accel: Specific force (m/s^2), device frame
            dt: Time step in seconds

        Returns:
            True if the state advanced, False if the step was skipped
        """
        if not np.isfinite(dt) or dt <= 0:
            return False

        with self._lock:
            s = self.state
            omega = np.asarray(gyro, dtype=np.float64) - s.gyro_bias
            accel_body = np.asarray(accel, dtype=np.float64) - s.accel_bias
            accel_world = rotate_vector(s.orientation, accel_body) + self.gravity

            position = s.position + s.velocity * dt + 0.5 * accel_world * dt * dt
            velocity = s.velocity + accel_world * dt
            orientation = normalize_quaternion(
                quaternion_multiply(s.orientation, quaternion_from_angular_velocity(omega, dt)))
            covariance = self.covariance + self._process_noise(dt)

            if not (np.all(np.isfinite(position)) and np.all(np.isfinite(velocity))
                    and np.all(np.isfinite(covariance))):
                self.logger.warning("Skipping IMU prediction with non-finite result")
                return False

            s.position, s.velocity, s.orientation = position, velocity, orientation
            s.timestamp += dt
            self.covariance = covariance
            return True

    def update(self, position, velocity=None):
        """
        Correct the state with a visual position (and optional velocity).

        Returns:
            True if the correction was applied, False if the innovation
            covariance was singular and the prior state was kept
        """
        rows = [POS] if velocity is None else [POS, VEL]
        measurement = [np.asarray(position, dtype=np.float64)]
        noise = [np.full(3, self.measurement_noise.position ** 2)]
        if velocity is not None:
            measurement.append(np.asarray(velocity, dtype=np.float64))
            noise.append(np.full(3, self.measurement_noise.velocity ** 2))
        z = np.concatenate(measurement)
        R = np.diag(np.concatenate(noise))

        H = np.zeros((3 * len(rows), STATE_DIM))
        for i, block in enumerate(rows):
            H[3 * i:3 * i + 3, block] = np.eye(3)

        with self._lock:
            s = self.state
            predicted = s.position if velocity is None else np.concatenate([s.position, s.velocity])
            innovation = z - predicted

            P = self.covariance
            S = H @ P @ H.T + R
            with np.errstate(divide='ignore', invalid='ignore'):
                condition = np.linalg.cond(S) if np.all(np.isfinite(S)) else np.inf
            if not np.isfinite(condition) or condition > MAX_CONDITION_NUMBER:
                self.logger.warning("Singular innovation covariance, skipping update")
                return False
            try:
                K = np.linalg.solve(S, H @ P.T).T  # P H^T S^-1
            except np.linalg.LinAlgError:
                self.logger.warning("Innovation covariance inversion failed, skipping update")
                return False

            dx = K @ innovation
            s.position = s.position + dx[POS]
            s.velocity = s.velocity + dx[VEL]
            s.orientation = normalize_quaternion(
                quaternion_multiply(s.orientation, quaternion_from_rotation_vector(dx[ROT])))
            s.gyro_bias = s.gyro_bias + dx[GYRO_BIAS]
            s.accel_bias = s.accel_bias + dx[ACCEL_BIAS]
            self.covariance = (np.eye(STATE_DIM) - K @ H) @ P
            return True

    def reset(self, state=None, uncertainty=0.1):
        with self._lock:
            self.state = EKFState() if state is None else state.copy()
            self.covariance = np.eye(STATE_DIM) * uncertainty

    def get_state(self):
        with self._lock:
            return self.state.copy()

    def get_covariance(self):
        with self._lock:
            return self.covariance.copy()

    def get_position_uncertainty(self):
        """Standard deviation of each position axis."""
        with self._lock:
            return np.sqrt(np.diag(self.covariance)[POS])
