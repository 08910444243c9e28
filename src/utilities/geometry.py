import numpy as np
from typing import List

# Force plates lie on the ground, which is the world x-z plane (y is up)
GROUND_AXES = (0, 2)


def prepare_convex_2d_shape(corners: List[np.ndarray]) -> List[np.ndarray]:
    """
    Projects 3D corners onto the ground plane and orders them counter-clockwise around their centroid, so that
    convex_2d_shape_contains() can walk the edges in order.
    """
    points = [np.array([corner[GROUND_AXES[0]], corner[GROUND_AXES[1]]], dtype=np.float64) for corner in corners]
    if len(points) == 0:
        return points
    center = np.mean(points, axis=0)
    return sorted(points, key=lambda p: np.arctan2(p[1] - center[1], p[0] - center[0]))


def convex_2d_shape_contains(point: np.ndarray, shape: List[np.ndarray]) -> bool:
    if len(shape) < 3:
        return False
    p = np.array([point[GROUND_AXES[0]], point[GROUND_AXES[1]]], dtype=np.float64)
    sign = 0.0
    for i in range(len(shape)):
        a = shape[i]
        b = shape[(i + 1) % len(shape)]
        edge = b - a
        to_point = p - a
        cross = edge[0] * to_point[1] - edge[1] * to_point[0]
        if cross == 0.0:
            continue
        if sign == 0.0:
            sign = np.sign(cross)
        elif np.sign(cross) != sign:
            return False
    return True
