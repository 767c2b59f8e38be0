import threading

import numpy as np

from vislam.core.geometry import identity_quaternion, relative_rotation_angle
from vislam.inertial.ekf import (
    ACCEL_BIAS,
    POS,
    EKFState,
    ExtendedKalmanFilter,
    MeasurementNoise,
)


class TestPrediction:
    def setup_method(self):
        self.initial = EKFState(position=[1.0, 2.0, 3.0], velocity=[0.5, -1.0, 2.0])

    def test_constant_velocity_without_gravity(self):
        ekf = ExtendedKalmanFilter(self.initial, gravity=(0.0, 0.0, 0.0))
        assert ekf.predict(np.zeros(3), np.zeros(3), 0.01)
        state = ekf.get_state()
        np.testing.assert_array_equal(state.position, self.initial.position + self.initial.velocity * 0.01)
        np.testing.assert_array_equal(state.velocity, self.initial.velocity)
        np.testing.assert_array_equal(state.orientation, identity_quaternion())
        assert np.isclose(state.timestamp, 0.01)

    def test_gravity_reaction_cancels_gravity(self):
        ekf = ExtendedKalmanFilter(self.initial)
        for _ in range(100):
            ekf.predict(np.zeros(3), [0.0, 9.81, 0.0], 0.005)
        state = ekf.get_state()
        np.testing.assert_allclose(state.velocity, self.initial.velocity, atol=1e-9)
        np.testing.assert_allclose(state.position, self.initial.position + self.initial.velocity * 0.5,
                                   atol=1e-9)

    def test_free_fall(self):
        ekf = ExtendedKalmanFilter()
        for _ in range(100):
            ekf.predict(np.zeros(3), np.zeros(3), 0.01)
        np.testing.assert_allclose(ekf.get_state().velocity, [0.0, -9.81, 0.0], atol=1e-9)

    def test_gyro_integration(self):
        ekf = ExtendedKalmanFilter()
        for _ in range(100):
            ekf.predict([0.0, 0.0, np.pi / 2], [0.0, 9.81, 0.0], 0.01)
        angle = relative_rotation_angle(identity_quaternion(), ekf.get_state().orientation)
        assert np.isclose(angle, np.pi / 2, atol=1e-6)

    def test_covariance_never_shrinks(self):
        ekf = ExtendedKalmanFilter()
        previous = np.diag(ekf.get_covariance())
        for _ in range(20):
            ekf.predict([0.01, 0.0, 0.0], [0.0, 9.81, 0.1], 0.005)
            current = np.diag(ekf.get_covariance())
            assert np.all(current >= previous)
            previous = current

    def test_invalid_time_steps_are_skipped(self):
        ekf = ExtendedKalmanFilter(self.initial)
        assert not ekf.predict(np.zeros(3), np.zeros(3), 0.0)
        assert not ekf.predict(np.zeros(3), np.zeros(3), -0.01)
        assert not ekf.predict(np.zeros(3), np.zeros(3), float('nan'))
        np.testing.assert_array_equal(ekf.get_state().position, self.initial.position)


class TestUpdate:
    def test_pulls_towards_measurement(self):
        ekf = ExtendedKalmanFilter()
        before = ekf.get_position_uncertainty()
        assert ekf.update([1.0, 0.0, 0.0])
        state = ekf.get_state()
        assert 0.0 < state.position[0] < 1.0
        assert np.all(ekf.get_position_uncertainty() < before)

    def test_velocity_measurement(self):
        ekf = ExtendedKalmanFilter()
        assert ekf.update(np.zeros(3), velocity=[1.0, 0.0, 0.0])
        assert ekf.get_state().velocity[0] > 0.0

    def test_singular_innovation_keeps_prior(self):
        ekf = ExtendedKalmanFilter(measurement_noise=MeasurementNoise(position=0.0, velocity=0.0),
                                   initial_uncertainty=0.0)
        assert not ekf.update([1.0, 1.0, 1.0])
        np.testing.assert_array_equal(ekf.get_state().position, np.zeros(3))
        np.testing.assert_array_equal(ekf.get_covariance(), np.zeros((15, 15)))

    def test_all_accel_bias_axes_are_corrected(self):
        ekf = ExtendedKalmanFilter()
        covariance = ekf.get_covariance()
        covariance[POS, ACCEL_BIAS] = 0.05 * np.eye(3)
        covariance[ACCEL_BIAS, POS] = 0.05 * np.eye(3)
        ekf.covariance = covariance

        assert ekf.update([1.0, -1.0, 0.5])
        accel_bias = ekf.get_state().accel_bias
        assert np.all(accel_bias != 0.0)
        np.testing.assert_allclose(np.sign(accel_bias), [1.0, -1.0, 1.0])

    def test_reset(self):
        ekf = ExtendedKalmanFilter()
        ekf.update([1.0, 0.0, 0.0])
        ekf.reset(EKFState(position=[5.0, 0.0, 0.0]), uncertainty=0.5)
        np.testing.assert_array_equal(ekf.get_state().position, [5.0, 0.0, 0.0])
        np.testing.assert_allclose(ekf.get_covariance(), np.eye(15) * 0.5)


class TestConcurrency:
    def test_predict_and_update_from_threads(self):
        ekf = ExtendedKalmanFilter()
        errors = []

        def imu():
            try:
                for _ in range(200):
                    ekf.predict([0.0, 0.0, 0.1], [0.0, 9.81, 0.0], 0.005)
            except Exception as e:
                errors.append(e)

        def camera():
            try:
                for _ in range(50):
                    ekf.update(np.zeros(3))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=imu), threading.Thread(target=camera)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        state = ekf.get_state()
        assert np.all(np.isfinite(state.position))
        assert np.isclose(np.linalg.norm(state.orientation), 1.0)
