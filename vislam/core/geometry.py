"""
Geometry helpers shared by the tracker, mapper and filter.

Quaternions are numpy arrays in (x, y, z, w) order, the same order scipy's
Rotation uses. Camera orientation quaternions rotate camera-frame vectors
into the world frame; the camera looks along +z.
"""

import cv2
import numpy as np
from scipy.spatial.transform import Rotation as R


def identity_quaternion():
    return np.array([0.0, 0.0, 0.0, 1.0])


def normalize_quaternion(q):
    """Normalize a quaternion, falling back to identity for a zero vector."""
    q = np.asarray(q, dtype=np.float64)
    norm = np.linalg.norm(q)
    if norm < 1e-12:
        return identity_quaternion()
    return q / norm


def quaternion_multiply(q1, q2):
    """Hamilton product q1 * q2 for (x, y, z, w) quaternions."""
    x1, y1, z1, w1 = q1
    x2, y2, z2, w2 = q2
    return np.array([
        w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
        w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
        w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
        w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
    ])


def quaternion_conjugate(q):
    return np.array([-q[0], -q[1], -q[2], q[3]])


def quaternion_from_rotation_vector(rotvec):
    """Quaternion for a rotation vector (axis * angle)."""
    rotvec = np.asarray(rotvec, dtype=np.float64)
    if np.linalg.norm(rotvec) < 1e-12:
        return identity_quaternion()
    return R.from_rotvec(rotvec).as_quat()


def quaternion_from_angular_velocity(omega, dt):
    """
    Incremental rotation for a constant angular velocity over dt.

    Args:
        omega: Angular velocity vector (rad/s)
        dt: Time step in seconds

    Returns:
        Quaternion with axis omega/|omega| and angle |omega| * dt
    """
    return quaternion_from_rotation_vector(np.asarray(omega, dtype=np.float64) * dt)


def quaternion_to_matrix(q):
    return R.from_quat(normalize_quaternion(q)).as_matrix()


def matrix_to_quaternion(rotation_matrix):
    return R.from_matrix(rotation_matrix).as_quat()


def rotate_vector(q, v):
    """Rotate vector v by quaternion q."""
    return quaternion_to_matrix(q) @ np.asarray(v, dtype=np.float64)


def relative_rotation_angle(q1, q2):
    """
    Angle of the rotation taking q1 to q2.

    Returns:
        2 * acos(|w|) of the relative quaternion, in radians within [0, pi]
    """
    relative = quaternion_multiply(quaternion_conjugate(normalize_quaternion(q1)),
                                   normalize_quaternion(q2))
    w = np.clip(abs(relative[3]), 0.0, 1.0)
    return 2.0 * np.arccos(w)


def forward_vector(q):
    """Viewing direction (+z camera axis) expressed in the world frame."""
    return rotate_vector(q, [0.0, 0.0, 1.0])


def angle_between(v1, v2):
    """Angle between two vectors in radians, 0 if either is zero."""
    n1 = np.linalg.norm(v1)
    n2 = np.linalg.norm(v2)
    if n1 < 1e-12 or n2 < 1e-12:
        return 0.0
    cos_angle = np.clip(np.dot(v1, v2) / (n1 * n2), -1.0, 1.0)
    return float(np.arccos(cos_angle))


def pose_matrices(position, rotation):
    """
    Build the world-to-camera and camera-to-world transforms.

    Args:
        position: Camera center in world coordinates (3,)
        rotation: Camera-to-world orientation quaternion (x, y, z, w)

    Returns:
        (transform, inverse): 4x4 world-to-camera and camera-to-world matrices
    """
    R_wc = quaternion_to_matrix(rotation)
    t_wc = np.asarray(position, dtype=np.float64)

    inverse = np.eye(4)
    inverse[:3, :3] = R_wc
    inverse[:3, 3] = t_wc

    transform = np.eye(4)
    transform[:3, :3] = R_wc.T
    transform[:3, 3] = -R_wc.T @ t_wc
    return transform, inverse


def pose_from_rvec_tvec(rvec, tvec):
    """
    Convert an OpenCV world-to-camera (rvec, tvec) into camera position and
    camera-to-world orientation.
    """
    R_cw, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))
    t_cw = np.asarray(tvec, dtype=np.float64).reshape(3)
    position = -R_cw.T @ t_cw  # Camera center C = -R^T * t
    rotation = matrix_to_quaternion(R_cw.T)
    return position, rotation


def rvec_tvec_from_pose(position, rotation):
    """Inverse of pose_from_rvec_tvec, used to seed iterative solvers."""
    transform, _ = pose_matrices(position, rotation)
    rvec, _ = cv2.Rodrigues(transform[:3, :3])
    return rvec, transform[:3, 3].reshape(3, 1)


def projection_matrix(camera_matrix, transform):
    """3x4 projection matrix K [R | t] for a world-to-camera transform."""
    return camera_matrix @ transform[:3, :]
