import unittest
import numpy as np
from utilities.geometry import prepare_convex_2d_shape, convex_2d_shape_contains


class TestGeometry(unittest.TestCase):
    def test_contains_with_shuffled_corners(self):
        corners = [np.array([1.0, 0.0, 1.0]),
                   np.array([-1.0, 0.0, -1.0]),
                   np.array([-1.0, 0.0, 1.0]),
                   np.array([1.0, 0.0, -1.0])]
        shape = prepare_convex_2d_shape(corners)
        self.assertEqual(len(shape), 4)
        self.assertTrue(convex_2d_shape_contains(np.array([0.0, 5.0, 0.0]), shape))
        self.assertTrue(convex_2d_shape_contains(np.array([0.9, -1.0, -0.9]), shape))
        self.assertFalse(convex_2d_shape_contains(np.array([1.5, 0.0, 0.0]), shape))
        self.assertFalse(convex_2d_shape_contains(np.array([0.0, 0.0, -1.2]), shape))

    def test_height_is_ignored(self):
        shape = prepare_convex_2d_shape([np.array([0.0, 3.0, 0.0]),
                                         np.array([2.0, 1.0, 0.0]),
                                         np.array([0.0, 2.0, 2.0])])
        self.assertTrue(convex_2d_shape_contains(np.array([0.5, 100.0, 0.5]), shape))
        self.assertFalse(convex_2d_shape_contains(np.array([1.5, 0.0, 1.5]), shape))

    def test_degenerate_shapes_contain_nothing(self):
        self.assertEqual(prepare_convex_2d_shape([]), [])
        shape = prepare_convex_2d_shape([np.array([0.0, 0.0, 0.0]), np.array([1.0, 0.0, 1.0])])
        self.assertFalse(convex_2d_shape_contains(np.array([0.5, 0.0, 0.5]), shape))
