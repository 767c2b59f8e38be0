"""Inertial sensing: IMU adapter and the visual-inertial Kalman filter."""

from vislam.inertial.ekf import EKFState, ExtendedKalmanFilter, MeasurementNoise, ProcessNoise
from vislam.inertial.imu_manager import IMUManager
from vislam.inertial.vio_manager import VIOManager
