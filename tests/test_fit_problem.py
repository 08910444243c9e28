import itertools
import unittest
import numpy as np
from dynamics_pass.config import DynamicsFitProblemConfig
from dynamics_pass.fit_problem import DynamicsFitProblem, SparseJacobian
from dynamics_pass.problem_layout import BlockKind
from exceptions import MissingGRFStatusError, NumericalAnomalyError, DynamicsFitterError
from synthetic_data import leg_init, point_mass_init, relative_errors


def everything_config() -> DynamicsFitProblemConfig:
    return DynamicsFitProblemConfig() \
        .set_include_masses(True) \
        .set_include_coms(True) \
        .set_include_inertias(True) \
        .set_include_body_scales(True) \
        .set_include_marker_offsets(True) \
        .set_include_poses(True) \
        .set_regularize_poses(0.5)


def make_problem(model, init, config: DynamicsFitProblemConfig) -> DynamicsFitProblem:
    return DynamicsFitProblem(init, model, init.updated_marker_map, init.tracking_markers, init.grf_bodies, config)


class TestDynamicsFitProblem(unittest.TestCase):
    def test_problem_size(self):
        model, init = leg_init(5)
        problem = make_problem(model, init, everything_config())
        # 3 masses, 9 COMs, 18 inertias, 9 scales, 3 markers * 3, and 12 blocks of 5 DOFs for the motion
        self.assertEqual(problem.get_problem_size(), 3 + 9 + 18 + 9 + 9 + 12 * 5)
        self.assertEqual(problem.get_constraint_size(), 7 * 5)

        problem = make_problem(model, init, DynamicsFitProblemConfig().set_include_poses(False)
                               .set_include_marker_offsets(False))
        self.assertEqual(problem.get_problem_size(), 3 + 9 + 18 + 9)
        self.assertEqual(problem.get_constraint_size(), 0)
        self.assertEqual(len(problem.compute_constraints(problem.flatten())), 0)

    def test_loss_gradient_matches_finite_differences(self):
        for residual_use_l1, marker_use_l1 in [(False, False), (True, True)]:
            model, init = leg_init(5)
            config = everything_config().set_residual_use_l1(residual_use_l1).set_marker_use_l1(marker_use_l1)
            problem = make_problem(model, init, config)
            x = problem.flatten()
            analytical = problem.compute_gradient(x)
            fd = problem.finite_difference_gradient(x)
            errors = relative_errors(fd, analytical)
            worst = int(np.argmax(errors))
            self.assertLess(errors[worst], 1e-6, msg=f'Worst gradient error on {problem.layout.describe(worst)}, '
                                                      f'residual_use_l1={residual_use_l1}')
            self.assertFalse(problem.debug_errors(fd, analytical, 'loss gradient'))

    def test_point_mass_gradient_without_poses(self):
        model, init = point_mass_init(true_mass=2.0, model_mass=2.5)
        init.probably_missing_grf = [[False] * 5]
        problem = make_problem(model, init, DynamicsFitProblemConfig().set_include_poses(False))
        x = problem.flatten()
        self.assertGreater(problem.compute_loss(x), 0.0)
        self.assertLess(np.max(relative_errors(problem.finite_difference_gradient(x), problem.compute_gradient(x))),
                        1e-6)

    def test_constraint_jacobian_matches_finite_differences(self):
        model, init = leg_init(5)
        problem = make_problem(model, init, everything_config())
        x = problem.flatten()
        # Velocities and accelerations start out as exact finite differences of the poses
        np.testing.assert_allclose(problem.compute_constraints(x), np.zeros(problem.get_constraint_size()),
                                   atol=1e-10)
        x = x + 0.01 * np.sin(np.arange(len(x)))
        sparse = problem.compute_sparse_constraints_jacobian()
        self.assertEqual(sparse.shape, (problem.get_constraint_size(), problem.get_problem_size()))
        np.testing.assert_allclose(problem.compute_constraints_jacobian(),
                                   problem.finite_difference_constraints_jacobian(x), atol=1e-6)
        # Static blocks never show up in the constraints
        rows, cols = sparse.structure()
        self.assertTrue(np.all(cols >= problem.layout.static_size()))

    def test_flatten_unflatten_round_trip(self):
        for flags in itertools.product([True, False], repeat=6):
            model, init = leg_init(4)
            config = DynamicsFitProblemConfig() \
                .set_include_masses(flags[0]) \
                .set_include_coms(flags[1]) \
                .set_include_inertias(flags[2]) \
                .set_include_body_scales(flags[3]) \
                .set_include_marker_offsets(flags[4]) \
                .set_include_poses(flags[5])
            problem = make_problem(model, init, config)
            x = problem.flatten()
            self.assertEqual(len(x), problem.get_problem_size())
            nudged = x + 1e-3 * np.cos(np.arange(len(x)))
            problem.unflatten(nudged)
            self.assertTrue(np.array_equal(problem.flatten(), nudged), msg=f'Round trip failed for flags {flags}')
            problem.unflatten(x)
            self.assertTrue(np.array_equal(problem.flatten(), x), msg=f'Round trip failed for flags {flags}')

    def test_repeated_unflatten_is_idempotent(self):
        model, init = leg_init(5)
        problem = make_problem(model, init, everything_config())
        x = problem.flatten() + 0.002
        loss = problem.compute_loss(x)
        grad = problem.compute_gradient(x)
        problem.unflatten(x)
        problem.unflatten(x.copy())
        self.assertEqual(problem.compute_loss(x), loss)
        self.assertTrue(np.array_equal(problem.compute_gradient(x), grad))
        # Moving away and coming back lands on the same values
        problem.compute_loss(x + 0.1)
        self.assertEqual(problem.compute_loss(x), loss)
        self.assertTrue(np.array_equal(problem.last_x(), x))

    def test_bounds_are_ordered(self):
        model, init = leg_init(5)
        problem = make_problem(model, init, everything_config())
        lower = problem.flatten_lower_bound()
        upper = problem.flatten_upper_bound()
        x = problem.flatten()
        self.assertEqual(len(lower), problem.get_problem_size())
        self.assertTrue(np.all(lower <= upper))
        self.assertTrue(np.all(lower <= x))
        self.assertTrue(np.all(x <= upper))
        offsets = problem.layout.find(BlockKind.MARKER_OFFSETS)
        np.testing.assert_allclose(lower[offsets.indices], -5.0)
        np.testing.assert_allclose(upper[offsets.indices], 5.0)

    def test_missing_grf_frames_drop_out_of_residual(self):
        model, init = leg_init(5)
        config = everything_config()
        problem = make_problem(model, init, config)
        x = problem.flatten()
        loss = problem.compute_loss(x)

        t = 1
        init.probably_missing_grf[0][t] = True
        flagged_loss = problem.compute_loss(x)
        frame_residual = config.residual_weight / problem.total_acc_timesteps * \
            problem.residual_helper.calculate_residual_norm(problem.poses[0][:, t], problem.vels[0][:, t],
                                                            problem.accs[0][:, t], init.grf_trials[0][:, t])
        self.assertGreater(frame_residual, 0.0)
        self.assertAlmostEqual(loss - flagged_loss, frame_residual, delta=1e-9 * max(1.0, abs(loss)))

        # Accelerations only show up in the residual
        grad = problem.compute_gradient(x)
        acc_block = problem.layout.find(BlockKind.ACCELERATION, 0, t)
        self.assertTrue(np.all(grad[acc_block.indices] == 0))
        self.assertTrue(np.any(grad[problem.layout.find(BlockKind.ACCELERATION, 0, 0).indices] != 0))

        # Whatever the force plates recorded on the flagged frame no longer matters
        init.grf_trials[0][:, t] += np.random.default_rng(0).normal(scale=50.0, size=init.grf_trials[0].shape[0])
        self.assertEqual(problem.compute_loss(x), flagged_loss)
        np.testing.assert_array_equal(problem.compute_gradient(x), grad)

        # While an unflagged frame still does
        init.grf_trials[0][:, 2] += 10.0
        self.assertNotEqual(problem.compute_loss(x), flagged_loss)

    def test_missing_grf_status_is_required(self):
        model, init = leg_init(5)
        init.probably_missing_grf = []
        problem = make_problem(model, init, everything_config())
        with self.assertRaises(MissingGRFStatusError):
            problem.compute_loss(problem.flatten())
        with self.assertRaises(DynamicsFitterError):
            problem.compute_gradient(problem.flatten())

        # Flags that stop short of the last frame count as missing too
        init.probably_missing_grf = [[False] * 4]
        self.assertFalse(init.has_missing_grf_flags())
        with self.assertRaises(MissingGRFStatusError):
            problem.compute_loss(problem.flatten())
        init.probably_missing_grf = [[False] * 5]
        self.assertTrue(init.has_missing_grf_flags())
        self.assertTrue(np.isfinite(problem.compute_loss(problem.flatten())))

    def test_nan_loss_is_reported(self):
        model, init = leg_init(5)
        init.grf_trials[0][4, 0] = np.nan
        problem = make_problem(model, init, everything_config())
        with self.assertRaises(NumericalAnomalyError) as context:
            problem.compute_loss(problem.flatten())
        self.assertEqual(context.exception.term, 'residual')
        self.assertEqual(context.exception.get_error_dict()['type'], 'NumericalAnomalyError')

    def test_log_explanation(self):
        model, init = leg_init(5)
        problem = make_problem(model, init, everything_config())
        x = problem.flatten()
        self.assertEqual(problem.compute_loss(x, log_explanation=True), problem.compute_loss(x))

    def test_only_one_trial(self):
        model, init = point_mass_init(num_trials=3)
        init.probably_missing_grf = [[False] * 5 for _ in range(3)]
        problem = make_problem(model, init, DynamicsFitProblemConfig().set_only_one_trial(1))
        self.assertEqual(problem.trials, [1])
        self.assertIsNotNone(problem.layout.find(BlockKind.POSE, 1, 0))
        self.assertIsNone(problem.layout.find(BlockKind.POSE, 0, 0))
        problem = make_problem(model, init, DynamicsFitProblemConfig().set_max_num_trials(2))
        self.assertEqual(problem.trials, [0, 1])

    def test_finalize_solution(self):
        model, init = leg_init(5)
        problem = make_problem(model, init, everything_config())
        x = problem.flatten()
        masses = problem.layout.find(BlockKind.MASSES)
        x[masses.indices] = np.array([11.0, 5.0, 3.0])
        pose = problem.layout.find(BlockKind.POSE, 0, 2)
        x[pose.indices] += 0.05
        offsets = problem.layout.find(BlockKind.MARKER_OFFSETS)
        x[offsets.start] += 0.01
        problem.finalize_solution(x)

        np.testing.assert_allclose(init.body_masses, [11.0, 5.0, 3.0])
        np.testing.assert_allclose(init.pose_trials[0][:, 2], x[pose.indices])
        name = problem.marker_names[0]
        self.assertAlmostEqual(init.updated_marker_map[name][1][0], x[offsets.start])


class TestSparseJacobian(unittest.TestCase):
    def test_accumulates_duplicates(self):
        jac = SparseJacobian(2, 3)
        jac.add(0, 1, 2.0)
        jac.add(1, 2, -1.0)
        jac.add(0, 1, 0.5)
        self.assertEqual(len(jac), 3)
        np.testing.assert_allclose(jac.to_dense(), np.array([[0.0, 2.5, 0.0], [0.0, 0.0, -1.0]]))
        rows, cols = jac.structure()
        self.assertEqual(list(rows), [0, 1, 0])
        self.assertEqual(list(cols), [1, 2, 1])
        self.assertEqual(jac.to_csr().shape, (2, 3))
