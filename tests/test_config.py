import unittest
from dynamics_pass.config import DynamicsFitProblemConfig
from exceptions import TrialIndexError


class TestDynamicsFitProblemConfig(unittest.TestCase):
    def test_defaults(self):
        config = DynamicsFitProblemConfig()
        self.assertTrue(config.include_masses)
        self.assertTrue(config.include_poses)
        self.assertEqual(config.residual_weight, 0.1)
        self.assertEqual(config.marker_weight, 1.0)
        self.assertEqual(config.regularize_tracking_marker_offsets, 0.05)
        self.assertEqual(config.regularize_anatomical_marker_offsets, 10.0)
        self.assertEqual(config.regularize_body_scales, 0.2)
        self.assertEqual(config.regularize_poses, 0.0)
        self.assertFalse(config.residual_use_l1)
        self.assertEqual(config.only_one_trial, -1)
        self.assertEqual(config.max_num_trials, -1)

    def test_setters_chain(self):
        config = DynamicsFitProblemConfig() \
            .set_include_masses(False) \
            .set_residual_weight(2.0) \
            .set_regularize_poses(0.3) \
            .set_marker_use_l1(True)
        self.assertFalse(config.include_masses)
        self.assertEqual(config.residual_weight, 2.0)
        self.assertEqual(config.regularize_poses, 0.3)
        self.assertTrue(config.marker_use_l1)

    def test_select_trials(self):
        self.assertEqual(DynamicsFitProblemConfig().select_trials(3), [0, 1, 2])
        self.assertEqual(DynamicsFitProblemConfig().set_max_num_trials(2).select_trials(3), [0, 1])
        self.assertEqual(DynamicsFitProblemConfig().set_max_num_trials(0).select_trials(3), [])
        self.assertEqual(DynamicsFitProblemConfig().set_only_one_trial(2).select_trials(3), [2])
        with self.assertRaises(TrialIndexError):
            DynamicsFitProblemConfig().set_only_one_trial(3).select_trials(3)
        # A single trial wins over the trial limit
        self.assertEqual(DynamicsFitProblemConfig().set_only_one_trial(2).set_max_num_trials(1).select_trials(3),
                         [2])

    def test_json_overrides(self):
        config = DynamicsFitProblemConfig.from_json({
            'residualWeight': 0.5,
            'regularizeBodyScales': 3.0,
            'includePoses': False,
            'maxNumTrials': 1,
            'someUnrelatedKey': 'ignored',
        })
        self.assertEqual(config.residual_weight, 0.5)
        self.assertEqual(config.regularize_body_scales, 3.0)
        self.assertFalse(config.include_poses)
        self.assertEqual(config.max_num_trials, 1)
        self.assertEqual(config.marker_weight, 1.0)

        config = DynamicsFitProblemConfig().set_marker_weight(7.0).update_from_json(None)
        self.assertEqual(config.marker_weight, 7.0)
