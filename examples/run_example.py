import argparse
import logging

import numpy as np

from vislam import SLAMSystem, SLAMConfig, load_config
from vislam.core.types import CameraIntrinsics, Frame, IMUMeasurement, Keypoint

logger = logging.getLogger("run_example")

GRAVITY_REACTION = np.array([0.0, 9.81, 0.0])


def make_landmarks(num_points, rng):
    """Random landmarks in front of the camera, each with a fixed descriptor."""
    points = np.column_stack([
        rng.uniform(-4.0, 4.0, num_points),
        rng.uniform(-2.0, 2.0, num_points),
        rng.uniform(4.0, 10.0, num_points),
    ])
    descriptors = rng.integers(0, 256, size=(num_points, 32), dtype=np.uint8)
    return points, descriptors


def render_frame(points, descriptors, position, K, width, height, timestamp):
    """Project landmarks into a camera at `position` (identity orientation)."""
    camera_points = points - position
    in_front = camera_points[:, 2] > 0.1
    pixels = (K @ camera_points[in_front].T).T
    pixels = pixels[:, :2] / pixels[:, 2:3]
    visible = (pixels[:, 0] >= 0) & (pixels[:, 0] < width) & (pixels[:, 1] >= 0) & (pixels[:, 1] < height)

    keypoints = [Keypoint(float(x), float(y)) for x, y in pixels[visible]]
    return Frame(keypoints, descriptors[in_front][visible], timestamp)


def main():
    parser = argparse.ArgumentParser(description='Run VISLAM on a synthetic feature sequence')
    parser.add_argument('--config', type=str, default=None, help='Path to a YAML settings file')
    parser.add_argument('--frames', type=int, default=120, help='Number of frames to simulate')
    parser.add_argument('--imu', action='store_true', help='Simulate a 200 Hz IMU and enable fusion')
    parser.add_argument('--plot', type=str, default=None, help='Save a top-down map plot to this file')
    parser.add_argument('--seed', type=int, default=0)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s: %(message)s')

    config = load_config(args.config) if args.config else SLAMConfig()
    if args.imu:
        config = config.replace(use_imu=True)

    width, height = 1280, 720
    intrinsics = CameraIntrinsics(fx=718.856, fy=718.856, cx=640.0, cy=360.0)
    K = intrinsics.matrix

    rng = np.random.default_rng(args.seed)
    points, descriptors = make_landmarks(400, rng)

    slam = SLAMSystem(config, intrinsics=intrinsics)
    slam.initialize(width, height)

    fps = 30.0
    acceleration = np.array([0.3, 0.0, 0.0])  # Constant forward acceleration from rest
    imu_rate = config.imu_frequency
    for i in range(args.frames):
        timestamp = i / fps
        if args.imu and i > 0:
            steps = int(imu_rate / fps)
            for k in range(1, steps + 1):
                t = (i - 1) / fps + k / imu_rate
                slam.add_imu_measurement(IMUMeasurement(t, acceleration + GRAVITY_REACTION, np.zeros(3)))

        position = 0.5 * acceleration * timestamp ** 2
        frame = render_frame(points, descriptors, position, K, width, height, timestamp)
        result = slam.process_frame(frame)
        if i % 10 == 0:
            logger.info("frame %3d: state=%s tracked=%d position=%s", i, result.state.value,
                        result.num_tracked_features, np.round(result.pose.position, 3))

    stats = slam.get_stats()
    logger.info("Finished: %d keyframes, %d map points, %.1f fps, %d loop closures",
                stats.num_keyframes, stats.num_map_points, stats.fps, stats.num_loop_closures)

    if args.plot:
        from vislam.utils.visualizer import MapVisualizer
        MapVisualizer().save_map_plot(slam.get_map(), args.plot)
        logger.info("Map plot written to %s", args.plot)

    slam.shutdown()


if __name__ == "__main__":
    main()
