import unittest
import numpy as np
from dynamics_pass.config import DynamicsFitProblemConfig
from dynamics_pass.dynamics_fitter import DynamicsFitter
from dynamics_pass.initialization import ForcePlate, KinematicsInitialization
from rigid_body.planar_skeleton import create_point_mass_skeleton, create_two_link_leg_skeleton
from exceptions import TrialPreprocessingError, TrialIndexError
from synthetic_data import FPS, GRAVITY, POINT_MASS_ACC, PLATE_CORNERS, LEG_MARKERS, point_mass_init, \
    point_mass_trial, observe_markers, leg_poses, standing_on_unmeasured_ground

TRUE_MASS = 2.0
# |a - g|^2 for the point mass, which scales the squared residual per unit of mass error
ACC_MINUS_GRAVITY_SQUARED = POINT_MASS_ACC[0] ** 2 + (POINT_MASS_ACC[1] + GRAVITY) ** 2


def masses_only_config() -> DynamicsFitProblemConfig:
    return DynamicsFitProblemConfig() \
        .set_include_masses(True) \
        .set_include_coms(False) \
        .set_include_inertias(False) \
        .set_include_body_scales(False) \
        .set_include_marker_offsets(False) \
        .set_include_poses(False) \
        .set_residual_weight(1.0)


def quiet_fitter(model) -> DynamicsFitter:
    fitter = DynamicsFitter(model, [0], ['pelvis'])
    fitter.set_silence_output(True)
    return fitter


class TestCreateInitialization(unittest.TestCase):
    def test_inputs_are_validated(self):
        model = create_point_mass_skeleton(TRUE_MASS)
        poses, plate = point_mass_trial(TRUE_MASS)
        marker_map = {'pelvis': (0, np.zeros(3))}
        observations = observe_markers(model, marker_map, poses)

        with self.assertRaises(TrialPreprocessingError):
            DynamicsFitter.create_initialization(model, marker_map, [], [0], [[plate]], [poses, poses], [FPS],
                                                 [observations])
        with self.assertRaises(TrialPreprocessingError):
            DynamicsFitter.create_initialization(model, marker_map, [], [0], [[plate]], [poses[:, :2]], [FPS],
                                                 [observations])
        with self.assertRaises(TrialPreprocessingError):
            DynamicsFitter.create_initialization(model, marker_map, [], [0], [[plate]], [np.zeros((3, 5))], [FPS],
                                                 [observations])
        with self.assertRaises(TrialPreprocessingError):
            DynamicsFitter.create_initialization(model, marker_map, [], [0], [[plate]], [poses], [0],
                                                 [observations])
        with self.assertRaises(TrialPreprocessingError):
            DynamicsFitter.create_initialization(model, marker_map, [], [0], [[plate]], [poses], [FPS],
                                                 [observations[:3]])
        bad_poses = poses.copy()
        bad_poses[1, 2] = np.nan
        with self.assertRaises(TrialPreprocessingError) as context:
            DynamicsFitter.create_initialization(model, marker_map, [], [0], [[plate]], [bad_poses], [FPS],
                                                 [observations])
        self.assertIn('NaN', context.exception.original_message)

    def test_initial_state(self):
        model, init = point_mass_init(true_mass=TRUE_MASS, model_mass=2.6)
        poses, _ = point_mass_trial(TRUE_MASS)
        self.assertEqual(init.num_trials(), 1)
        self.assertEqual(init.num_frames(0), 5)
        self.assertAlmostEqual(init.trial_timesteps[0], 1.0 / FPS)
        # Quadratic motion survives smoothing
        np.testing.assert_allclose(init.pose_trials[0], poses, atol=1e-8)
        self.assertTrue(np.array_equal(init.original_poses[0], poses))
        np.testing.assert_allclose(init.body_masses, [2.6])
        np.testing.assert_allclose(init.original_group_masses, [2.6])
        self.assertFalse(init.has_missing_grf_flags())
        # The init owns its own copies
        init.original_poses[0][0, 0] = 100.0
        self.assertNotEqual(init.original_pose_trials[0][0, 0], 100.0)

    def test_grf_moved_to_world_origin(self):
        _, init = point_mass_init(true_mass=TRUE_MASS)
        poses, plate = point_mass_trial(TRUE_MASS)
        grf = init.grf_trials[0]
        self.assertEqual(grf.shape, (6, 5))
        for t in range(5):
            np.testing.assert_allclose(grf[3:6, t], plate.forces[t])
            np.testing.assert_allclose(grf[0:3, t], np.cross(plate.centers_of_pressure[t], plate.forces[t]))
            self.assertAlmostEqual(grf[2, t], poses[0, t] * plate.forces[t][1])

    def test_grf_assigned_to_nearest_foot(self):
        model = create_two_link_leg_skeleton()
        poses = leg_poses(5)
        plate = ForcePlate(forces=[np.array([0.0, 100.0, 0.0]) for _ in range(5)],
                           moments=[np.zeros(3) for _ in range(5)],
                           centers_of_pressure=[np.array([poses[0, t], 0.0, 0.0]) for t in range(5)],
                           corners=PLATE_CORNERS)
        init = DynamicsFitter.create_initialization(model, LEG_MARKERS, [], [0, 2], [[plate]], [poses], [FPS],
                                                    [observe_markers(model, LEG_MARKERS, poses)])
        grf = init.grf_trials[0]
        self.assertEqual(grf.shape, (12, 5))
        self.assertTrue(np.all(grf[0:6, :] == 0))
        np.testing.assert_allclose(grf[10, :], 100.0)

    def test_unknown_markers_are_dropped(self):
        model = create_point_mass_skeleton(TRUE_MASS)
        poses, plate = point_mass_trial(TRUE_MASS)
        marker_map = {'pelvis': (0, np.zeros(3))}
        observations = observe_markers(model, marker_map, poses)
        for frame in observations:
            frame['mystery'] = np.ones(3)
        init = DynamicsFitter.create_initialization(model, marker_map, [], [0], [[plate]], [poses], [FPS],
                                                    [observations])
        self.assertEqual(set(init.marker_observation_trials[0][0].keys()), {'pelvis'})
        self.assertIn('mystery', observations[0])

    def test_from_kinematics(self):
        model = create_point_mass_skeleton(TRUE_MASS)
        marker_map = {'pelvis': (0, np.array([0.0, 0.1, 0.0]))}
        poses_a, plate_a = point_mass_trial(TRUE_MASS, 5)
        poses_b, plate_b = point_mass_trial(TRUE_MASS, 4, height=1.5)
        kinematics = KinematicsInitialization()
        kinematics.poses = np.hstack([poses_a, poses_b])
        kinematics.updated_marker_map = marker_map
        kinematics.group_scales = np.array([1.0, 1.2, 1.0])
        kinematics.joints = [0]
        kinematics.joint_weights = np.array([1.0])
        kinematics.axis_weights = np.array([0.5])
        kinematics.joint_centers = np.vstack([kinematics.poses, np.zeros((1, 9))])
        kinematics.joint_axis = np.zeros((6, 9))
        observations = [observe_markers(model, marker_map, poses_a), observe_markers(model, marker_map, poses_b)]

        init = DynamicsFitter.create_initialization_from_kinematics(model, kinematics, ['pelvis'], [0],
                                                                    [[plate_a], [plate_b]], [FPS, FPS], observations)
        self.assertEqual(init.num_trials(), 2)
        self.assertEqual(init.num_frames(0), 5)
        self.assertEqual(init.num_frames(1), 4)
        np.testing.assert_allclose(init.group_scales, [1.0, 1.2, 1.0])
        self.assertEqual(init.joints, [0])
        self.assertEqual(init.joint_centers[1].shape, (3, 4))
        np.testing.assert_allclose(init.joint_centers[1][0:2, :], poses_b)
        self.assertEqual(init.joint_axis[0].shape, (6, 5))

        with self.assertRaises(TrialPreprocessingError):
            DynamicsFitter.create_initialization_from_kinematics(model, kinematics, ['pelvis'], [0], [[plate_a]],
                                                                 [FPS], observations[:1])


class TestFootGroundContacts(unittest.TestCase):
    def test_supported_frames_are_not_missing(self):
        model, init = point_mass_init()
        quiet_fitter(model).estimate_foot_ground_contacts(init)
        self.assertTrue(init.has_missing_grf_flags())
        self.assertEqual(init.probably_missing_grf, [[False] * 5])
        self.assertEqual(init.contact_bodies, [[0]])
        self.assertEqual(init.grf_body_force_active[0], [[True]] * 5)
        self.assertTrue(init.flat_ground[0])
        self.assertAlmostEqual(init.ground_height[0], 0.0)
        # The contact sphere grows to reach the ground from the highest loaded frame
        self.assertAlmostEqual(init.grf_body_contact_sphere_radius[0][0][0], float(np.max(init.pose_trials[0][1, :])))

    def test_contact_off_every_plate_is_missing(self):
        far_away = [np.array([10.0, 0.0, -1.0]), np.array([10.0, 0.0, 1.0]),
                    np.array([12.0, 0.0, 1.0]), np.array([12.0, 0.0, -1.0])]
        model, init = standing_on_unmeasured_ground(corners=far_away)
        quiet_fitter(model).estimate_foot_ground_contacts(init)
        self.assertEqual(init.probably_missing_grf, [[True] * 6])
        self.assertEqual(init.grf_body_sphere_in_contact[0], [[True]] * 6)
        self.assertEqual(init.grf_body_off_force_plate[0], [[True]] * 6)
        self.assertEqual(init.default_force_plate_corners[0], [])

    def test_contact_on_a_plate_is_not_missing(self):
        model, init = standing_on_unmeasured_ground(corners=PLATE_CORNERS)
        quiet_fitter(model).estimate_foot_ground_contacts(init)
        self.assertEqual(init.probably_missing_grf, [[False] * 6])

    def test_plate_outline_is_guessed_from_centers_of_pressure(self):
        model, init = standing_on_unmeasured_ground(corners=None)
        quiet_fitter(model).estimate_foot_ground_contacts(init)
        corners = init.default_force_plate_corners[0]
        self.assertEqual(len(corners), 4)
        np.testing.assert_allclose(np.min(corners, axis=0), [9.9, 0.0, -0.1])
        np.testing.assert_allclose(np.max(corners, axis=0), [10.1, 0.0, 0.1])
        self.assertEqual(init.probably_missing_grf, [[True] * 6])

    def test_uneven_ground(self):
        tilted = [np.array([-2.0, 0.0, -1.0]), np.array([-2.0, 0.0, 1.0]),
                  np.array([2.0, 0.05, 1.0]), np.array([2.0, 0.05, -1.0])]
        model, init = standing_on_unmeasured_ground(corners=tilted)
        quiet_fitter(model).estimate_foot_ground_contacts(init)
        self.assertFalse(init.flat_ground[0])


class TestMassHeuristics(unittest.TestCase):
    def test_scale_link_masses_from_gravity(self):
        model, init = point_mass_init(true_mass=TRUE_MASS, model_mass=3.0)
        fitter = quiet_fitter(model)
        fitter.scale_link_masses_from_gravity(init)
        self.assertAlmostEqual(float(init.body_masses[0]), TRUE_MASS, delta=1e-4)
        # The model itself is left alone until the init is applied
        np.testing.assert_allclose(model.get_link_masses(), [3.0])

    def test_estimate_link_masses_from_acceleration(self):
        model, init = point_mass_init(true_mass=TRUE_MASS, model_mass=3.0)
        fitter = quiet_fitter(model)
        fitter.estimate_link_masses_from_acceleration(init, 0.0)
        self.assertAlmostEqual(float(init.body_masses[0]), TRUE_MASS, delta=1e-4)

        _, init = point_mass_init(true_mass=TRUE_MASS, model_mass=3.0)
        fitter.estimate_link_masses_from_acceleration(init, 1e6)
        self.assertAlmostEqual(float(init.body_masses[0]), 3.0, delta=1e-3)

    def test_com_diagnostics(self):
        model, init = point_mass_init(true_mass=TRUE_MASS)
        fitter = quiet_fitter(model)
        coms = fitter.com_positions(init, 0)
        self.assertEqual(len(coms), 5)
        np.testing.assert_allclose(coms[2][0:2], init.pose_trials[0][:, 2])
        accs = fitter.com_accelerations(init, 0)
        self.assertEqual(len(accs), 3)
        np.testing.assert_allclose(accs[0][0:2], POINT_MASS_ACC, atol=1e-4)
        implied = fitter.implied_com_forces(init, 0)
        measured = fitter.measured_grf_forces(init, 0)
        self.assertEqual(len(implied), len(measured))
        np.testing.assert_allclose(implied[1], measured[1], atol=1e-3)
        with self.assertRaises(TrialIndexError):
            fitter.com_positions(init, 1)
        with self.assertRaises(TrialIndexError):
            fitter.measured_grf_forces(init, -1)


class TestRunOptimization(unittest.TestCase):
    def test_recovers_true_mass(self):
        model, init = point_mass_init(true_mass=TRUE_MASS, model_mass=1.3 * TRUE_MASS)
        fitter = quiet_fitter(model)
        fitter.estimate_foot_ground_contacts(init)
        result = fitter.run_optimization(init, config=masses_only_config().set_regularize_masses(0.0))
        self.assertLess(abs(float(init.body_masses[0]) - TRUE_MASS), 0.01 * TRUE_MASS)
        self.assertLess(result.best_objective, 1e-6)
        np.testing.assert_allclose(model.get_link_masses(), init.body_masses)

    def test_mass_regularization_pulls_towards_original(self):
        original_mass = 1.3 * TRUE_MASS
        fitted = []
        for regularization in [1.0, 100.0]:
            model, init = point_mass_init(true_mass=TRUE_MASS, model_mass=original_mass)
            fitter = quiet_fitter(model)
            fitter.estimate_foot_ground_contacts(init)
            fitter.run_optimization(init, config=masses_only_config().set_regularize_masses(regularization))
            mass = float(init.body_masses[0])
            expected = (ACC_MINUS_GRAVITY_SQUARED * TRUE_MASS + regularization * original_mass) / \
                (ACC_MINUS_GRAVITY_SQUARED + regularization)
            self.assertAlmostEqual(mass, expected, delta=1e-3)
            fitted.append(mass)
        self.assertLess(abs(fitted[1] - original_mass), abs(fitted[0] - original_mass))

    def test_default_arguments_build_a_config(self):
        model, init = point_mass_init(true_mass=TRUE_MASS, model_mass=2.2)
        fitter = quiet_fitter(model)
        fitter.set_iteration_limit(50)
        fitter.estimate_foot_ground_contacts(init)
        result = fitter.run_optimization(init, residual_weight=1.0, include_coms=False, include_inertias=False)
        self.assertLessEqual(result.best_objective, result.final_objective + 1e-12)
        self.assertLess(float(init.body_masses[0]), 2.2)
        self.assertGreater(float(init.body_masses[0]), TRUE_MASS)

    def test_check_derivatives(self):
        model, init = point_mass_init(true_mass=TRUE_MASS, model_mass=2.2)
        fitter = quiet_fitter(model)
        fitter.set_check_derivatives(True)
        fitter.set_iteration_limit(5)
        fitter.estimate_foot_ground_contacts(init)
        fitter.run_optimization(init, include_poses=True)
        self.assertTrue(np.all(np.isfinite(init.pose_trials[0])))

    def test_diagnostics(self):
        model, init = point_mass_init(true_mass=TRUE_MASS)
        fitter = quiet_fitter(model)
        fitter.estimate_foot_ground_contacts(init)
        self.assertAlmostEqual(fitter.compute_average_marker_rmse(init), 0.0, places=9)
        residual_force, residual_torque = fitter.compute_average_residual_force(init)
        self.assertLess(residual_force, 1e-4)
        self.assertEqual(residual_torque, 0.0)
        real_force, real_torque = fitter.compute_average_real_force(init)
        self.assertAlmostEqual(real_force, TRUE_MASS * np.sqrt(ACC_MINUS_GRAVITY_SQUARED))
        self.assertEqual(real_torque, 0.0)

        init.probably_missing_grf = [[True] * 5]
        self.assertEqual(fitter.compute_average_residual_force(init), (0.0, 0.0))
