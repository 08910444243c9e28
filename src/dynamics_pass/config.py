from typing import Dict, Any, List, Optional
from exceptions import TrialIndexError


class DynamicsFitProblemConfig:
    """
    Everything that decides what the dynamics fit problem optimizes and how it weighs its loss terms. The setters
    return `self`, so a configuration can be built up in one expression:

        config = DynamicsFitProblemConfig() \
            .set_include_masses(True) \
            .set_residual_weight(0.1) \
            .set_only_one_trial(2)
    """
    def __init__(self):
        # Which blocks of the decision vector are free
        self.include_masses: bool = True
        self.include_coms: bool = True
        self.include_inertias: bool = True
        self.include_body_scales: bool = True
        self.include_marker_offsets: bool = True
        self.include_poses: bool = True

        # Loss weights
        self.residual_weight: float = 0.1
        self.marker_weight: float = 1.0
        self.joint_weight: float = 1.0
        self.residual_use_l1: bool = False
        self.marker_use_l1: bool = False

        # Regularization weights
        self.regularize_masses: float = 1.0
        self.regularize_coms: float = 1.0
        self.regularize_inertias: float = 1.0
        self.regularize_tracking_marker_offsets: float = 0.05
        self.regularize_anatomical_marker_offsets: float = 10.0
        self.regularize_body_scales: float = 0.2
        self.regularize_poses: float = 0.0

        # Trial selection
        self.only_one_trial: int = -1
        self.max_num_trials: int = -1

    def set_include_masses(self, value: bool) -> 'DynamicsFitProblemConfig':
        self.include_masses = value
        return self

    def set_include_coms(self, value: bool) -> 'DynamicsFitProblemConfig':
        self.include_coms = value
        return self

    def set_include_inertias(self, value: bool) -> 'DynamicsFitProblemConfig':
        self.include_inertias = value
        return self

    def set_include_body_scales(self, value: bool) -> 'DynamicsFitProblemConfig':
        self.include_body_scales = value
        return self

    def set_include_marker_offsets(self, value: bool) -> 'DynamicsFitProblemConfig':
        self.include_marker_offsets = value
        return self

    def set_include_poses(self, value: bool) -> 'DynamicsFitProblemConfig':
        self.include_poses = value
        return self

    def set_residual_weight(self, value: float) -> 'DynamicsFitProblemConfig':
        self.residual_weight = value
        return self

    def set_marker_weight(self, value: float) -> 'DynamicsFitProblemConfig':
        self.marker_weight = value
        return self

    def set_joint_weight(self, value: float) -> 'DynamicsFitProblemConfig':
        self.joint_weight = value
        return self

    def set_residual_use_l1(self, value: bool) -> 'DynamicsFitProblemConfig':
        self.residual_use_l1 = value
        return self

    def set_marker_use_l1(self, value: bool) -> 'DynamicsFitProblemConfig':
        self.marker_use_l1 = value
        return self

    def set_regularize_masses(self, value: float) -> 'DynamicsFitProblemConfig':
        self.regularize_masses = value
        return self

    def set_regularize_coms(self, value: float) -> 'DynamicsFitProblemConfig':
        self.regularize_coms = value
        return self

    def set_regularize_inertias(self, value: float) -> 'DynamicsFitProblemConfig':
        self.regularize_inertias = value
        return self

    def set_regularize_tracking_marker_offsets(self, value: float) -> 'DynamicsFitProblemConfig':
        self.regularize_tracking_marker_offsets = value
        return self

    def set_regularize_anatomical_marker_offsets(self, value: float) -> 'DynamicsFitProblemConfig':
        self.regularize_anatomical_marker_offsets = value
        return self

    def set_regularize_body_scales(self, value: float) -> 'DynamicsFitProblemConfig':
        self.regularize_body_scales = value
        return self

    def set_regularize_poses(self, value: float) -> 'DynamicsFitProblemConfig':
        self.regularize_poses = value
        return self

    def set_only_one_trial(self, trial: int) -> 'DynamicsFitProblemConfig':
        self.only_one_trial = trial
        return self

    def set_max_num_trials(self, max_num_trials: int) -> 'DynamicsFitProblemConfig':
        self.max_num_trials = max_num_trials
        return self

    def select_trials(self, num_trials: int) -> List[int]:
        if self.only_one_trial >= 0:
            if self.only_one_trial >= num_trials:
                raise TrialIndexError(f'Only trial {self.only_one_trial} was selected, but there are only '
                                      f'{num_trials} trials.')
            return [self.only_one_trial]
        trials = list(range(num_trials))
        if self.max_num_trials >= 0:
            trials = trials[:self.max_num_trials]
        return trials

    @staticmethod
    def from_json(subject_json: Optional[Dict[str, Any]]) -> 'DynamicsFitProblemConfig':
        return DynamicsFitProblemConfig().update_from_json(subject_json)

    def update_from_json(self, subject_json: Optional[Dict[str, Any]]) -> 'DynamicsFitProblemConfig':
        """
        Overrides any weights present in a subject JSON blob, using camelCase keys like 'residualWeight' or
        'regularizeBodyScales'. Keys that are missing are left alone.
        """
        config = self
        if subject_json is None:
            return config
        setters = {
            'includeMasses': config.set_include_masses,
            'includeCOMs': config.set_include_coms,
            'includeInertias': config.set_include_inertias,
            'includeBodyScales': config.set_include_body_scales,
            'includeMarkerOffsets': config.set_include_marker_offsets,
            'includePoses': config.set_include_poses,
            'residualWeight': config.set_residual_weight,
            'markerWeight': config.set_marker_weight,
            'jointWeight': config.set_joint_weight,
            'residualUseL1': config.set_residual_use_l1,
            'markerUseL1': config.set_marker_use_l1,
            'regularizeMasses': config.set_regularize_masses,
            'regularizeCOMs': config.set_regularize_coms,
            'regularizeInertias': config.set_regularize_inertias,
            'regularizeTrackingMarkerOffsets': config.set_regularize_tracking_marker_offsets,
            'regularizeAnatomicalMarkerOffsets': config.set_regularize_anatomical_marker_offsets,
            'regularizeBodyScales': config.set_regularize_body_scales,
            'regularizePoses': config.set_regularize_poses,
            'onlyOneTrial': config.set_only_one_trial,
            'maxNumTrials': config.set_max_num_trials,
        }
        for key, setter in setters.items():
            if key in subject_json:
                setter(subject_json[key])
        return config
