import importlib.util
import unittest
import numpy as np
from rigid_body.model import WithRespectTo

NIMBLE_MISSING = importlib.util.find_spec('nimblephysics') is None


@unittest.skipIf(NIMBLE_MISSING, 'nimblephysics is not installed')
class TestNimbleSkeleton(unittest.TestCase):
    def setUp(self):
        import nimblephysics as nimble
        from rigid_body.nimble_skeleton import NimbleSkeleton
        self.skel = nimble.RajagopalHumanBodyModel().skeleton
        self.model = NimbleSkeleton(self.skel)

    def test_sizes(self):
        self.assertEqual(self.model.num_dofs(), self.skel.getNumDofs())
        self.assertEqual(self.model.num_bodies(), self.skel.getNumBodyNodes())
        self.assertEqual(self.model.num_root_dofs(), 6)
        self.assertEqual(self.model.root_residual_halves(), ([0, 1, 2], [3, 4, 5]))
        self.assertEqual(len(self.model.get_group_masses()), self.model.num_scale_groups())
        self.assertEqual(self.model.body_world_positions().shape, (self.model.num_bodies(), 3))

    def test_evaluate_at_restores_state(self):
        q = self.model.get_positions()
        with self.model.evaluate_at(q + 0.1):
            np.testing.assert_allclose(self.model.get_positions(), q + 0.1)
        np.testing.assert_allclose(self.model.get_positions(), q)

    def test_dynamics(self):
        M = self.model.mass_matrix()
        self.assertEqual(M.shape, (self.model.num_dofs(), self.model.num_dofs()))
        np.testing.assert_allclose(M, M.T, atol=1e-8)
        tau = self.model.wrench_to_generalized_forces(0, np.zeros(6))
        np.testing.assert_allclose(tau, np.zeros(self.model.num_dofs()), atol=1e-12)

    def test_pure_root_force(self):
        # A vertical force through the world origin on the pelvis only pushes the root up
        force = np.array([0.0, 0.0, 0.0, 0.0, 100.0, 0.0])
        with self.model.evaluate_at(np.zeros(self.model.num_dofs())):
            tau = self.model.wrench_to_generalized_forces(0, force)
        self.assertAlmostEqual(float(np.sum(np.abs(tau[6:]))), 0.0, places=8)
        self.assertGreater(np.linalg.norm(tau[:6]), 0.0)

    def test_group_masses_round_trip(self):
        masses = self.model.get_group_masses() * 1.1
        self.model.set_group_masses(masses)
        np.testing.assert_allclose(self.model.get_group_masses(), masses)

    def test_bounds(self):
        for wrt in [WithRespectTo.POSITION, WithRespectTo.GROUP_MASSES, WithRespectTo.GROUP_SCALES]:
            lower, upper = self.model.get_wrt_bounds(wrt)
            self.assertEqual(len(lower), self.model.wrt_dim(wrt))
            self.assertTrue(np.all(lower <= upper))
