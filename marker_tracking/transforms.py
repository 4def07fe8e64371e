"""Quaternion and vector utilities for marker pose handling.

Quaternions are (x, y, z, w) numpy arrays or :class:`Quaternion` records;
every function that produces a rotation returns it unit length.
"""

from __future__ import annotations

import math

import cv2
import numpy as np

from marker_pipeline.ip_types import Quaternion, Vector3

IDENTITY_QUAT = np.array([0.0, 0.0, 0.0, 1.0])

# Above this |dot| slerp falls back to normalized lerp.
SLERP_NLERP_THRESHOLD = 0.9995


def _quat(q) -> np.ndarray:
    if isinstance(q, Quaternion):
        return q.as_array()
    return np.asarray(q, dtype=np.float64).reshape(4)


def _vec(v) -> np.ndarray:
    if isinstance(v, Vector3):
        return v.as_array()
    return np.asarray(v, dtype=np.float64).reshape(3)


def normalize_quaternion(q, eps: float = 1e-8) -> np.ndarray:
    """Scale to unit length; near-zero input collapses to identity."""
    a = _quat(q)
    n = float(np.linalg.norm(a))
    if n < eps or not math.isfinite(n):
        return IDENTITY_QUAT.copy()
    return a / n


def multiply_quaternions(a, b) -> np.ndarray:
    """
    Hamilton product a ⊗ b.

    Applied to a vector, the result rotates by b first and then by a, so
    ``multiply_quaternions(parent, child)`` expresses child in parent's frame.
    """
    ax, ay, az, aw = _quat(a)
    bx, by, bz, bw = _quat(b)
    return np.array([
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    ])


def rotate_vector(v, q) -> np.ndarray:
    """Rotate vector v by unit quaternion q (v' = q v q*)."""
    x, y, z = _vec(v)
    qx, qy, qz, qw = _quat(q)

    tx = 2.0 * (qy * z - qz * y)
    ty = 2.0 * (qz * x - qx * z)
    tz = 2.0 * (qx * y - qy * x)

    return np.array([
        x + qw * tx + (qy * tz - qz * ty),
        y + qw * ty + (qz * tx - qx * tz),
        z + qw * tz + (qx * ty - qy * tx),
    ])


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def lerp_vector(a, b, t: float) -> np.ndarray:
    va = _vec(a)
    return va + (_vec(b) - va) * t


def slerp(a, b, t: float) -> np.ndarray:
    """
    Shortest-path spherical interpolation between unit quaternions.

    Nearly parallel inputs use normalized lerp, since sin(theta) -> 0
    makes the slerp weights numerically unstable.
    """
    qa = _quat(a)
    qb = _quat(b)

    cos_theta = float(np.dot(qa, qb))
    if cos_theta < 0.0:
        qb = -qb
        cos_theta = -cos_theta

    if cos_theta > SLERP_NLERP_THRESHOLD:
        return normalize_quaternion(qa + (qb - qa) * t)

    theta = math.acos(min(1.0, cos_theta))
    sin_theta = math.sin(theta)
    wa = math.sin((1.0 - t) * theta) / sin_theta
    wb = math.sin(t * theta) / sin_theta
    return normalize_quaternion(wa * qa + wb * qb)


def quaternion_from_matrix(R) -> np.ndarray:
    """
    Unit quaternion from a 3x3 rotation matrix.

    Branches on the largest diagonal term to keep the square root
    argument away from zero. Malformed input yields identity.
    """
    m = np.asarray(R, dtype=np.float64)
    if m.shape != (3, 3) or not np.all(np.isfinite(m)):
        return IDENTITY_QUAT.copy()

    m00, m01, m02 = m[0]
    m10, m11, m12 = m[1]
    m20, m21, m22 = m[2]

    trace = m00 + m11 + m22
    if trace > 0.0:
        s = math.sqrt(trace + 1.0) * 2.0
        q = [(m21 - m12) / s, (m02 - m20) / s, (m10 - m01) / s, 0.25 * s]
    elif m00 > m11 and m00 > m22:
        s = math.sqrt(1.0 + m00 - m11 - m22) * 2.0
        q = [0.25 * s, (m01 + m10) / s, (m02 + m20) / s, (m21 - m12) / s]
    elif m11 > m22:
        s = math.sqrt(1.0 + m11 - m00 - m22) * 2.0
        q = [(m01 + m10) / s, 0.25 * s, (m12 + m21) / s, (m02 - m20) / s]
    else:
        s = math.sqrt(1.0 + m22 - m00 - m11) * 2.0
        q = [(m02 + m20) / s, (m12 + m21) / s, 0.25 * s, (m10 - m01) / s]
    return normalize_quaternion(q)


def flip_solver_convention(R) -> np.ndarray:
    """
    Re-express a +Z-forward solver rotation in the renderer's +Z-backward
    camera space: conjugate by a Z flip, F R F with F = diag(1, 1, -1).
    """
    F = np.diag([1.0, 1.0, -1.0])
    return F @ np.asarray(R, dtype=np.float64) @ F


def rvec_to_matrix(rvec) -> np.ndarray:
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3))
    return R


def compose_pose(parent_position, parent_rotation, child_position, child_rotation):
    """
    Express a child pose given in the parent's frame in the parent's
    parent frame.

    Returns:
        (position (3,), rotation (4,))
    """
    position = _vec(parent_position) + rotate_vector(child_position, parent_rotation)
    rotation = normalize_quaternion(multiply_quaternions(parent_rotation, child_rotation))
    return position, rotation
