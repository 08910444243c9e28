import numpy as np
from typing import List, Dict, Tuple, Optional


class ForcePlate:
    """
    One force plate's recording for one trial: per-frame world forces, moments and centers of pressure, plus the
    plate's corners in world coordinates if they're known.
    """
    def __init__(self,
                 forces: List[np.ndarray],
                 moments: List[np.ndarray],
                 centers_of_pressure: List[np.ndarray],
                 corners: Optional[List[np.ndarray]] = None):
        self.forces = [np.asarray(f, dtype=np.float64) for f in forces]
        self.moments = [np.asarray(m, dtype=np.float64) for m in moments]
        self.centers_of_pressure = [np.asarray(c, dtype=np.float64) for c in centers_of_pressure]
        self.corners: List[np.ndarray] = [] if corners is None else [np.asarray(c, dtype=np.float64) for c in corners]

    def num_frames(self) -> int:
        return min(len(self.forces), len(self.moments), len(self.centers_of_pressure))


class KinematicsInitialization:
    """
    The output of a marker fitting (kinematics) pass over several trials, with every per-frame quantity
    concatenated across trials in trial order.
    """
    def __init__(self):
        self.poses: np.ndarray = np.zeros((0, 0))
        self.updated_marker_map: Dict[str, Tuple[int, np.ndarray]] = {}
        self.group_scales: Optional[np.ndarray] = None
        self.joints: List[int] = []
        self.joint_weights: np.ndarray = np.zeros(0)
        self.axis_weights: np.ndarray = np.zeros(0)
        self.joint_centers: np.ndarray = np.zeros((0, 0))
        self.joint_axis: np.ndarray = np.zeros((0, 0))


class DynamicsInitialization:
    """
    The shared working state of the dynamics fitting pipeline. It holds the input data for every trial, the
    current estimate of every parameter the fitter can change, and a snapshot of the original values of those
    parameters that the regularization terms pull back towards.
    """
    def __init__(self):
        # Input data, one entry per trial
        self.force_plate_trials: List[List[ForcePlate]] = []
        self.original_pose_trials: List[np.ndarray] = []
        self.marker_observation_trials: List[List[Dict[str, np.ndarray]]] = []
        self.trial_timesteps: List[float] = []
        self.tracking_markers: List[str] = []

        # Joint center tracking. joint_centers has 3 rows per joint, joint_axis has 6 (center, direction).
        self.joints: List[int] = []
        self.joint_weights: np.ndarray = np.zeros(0)
        self.axis_weights: np.ndarray = np.zeros(0)
        self.joint_centers: List[np.ndarray] = []
        self.joint_axis: List[np.ndarray] = []

        # Ground reaction wrenches: 6 rows (moment, force about the world origin) per GRF body, one column per frame
        self.grf_bodies: List[int] = []
        self.grf_trials: List[np.ndarray] = []

        # Ground contact heuristics, filled in by estimate_foot_ground_contacts()
        self.contact_bodies: List[List[int]] = []
        self.grf_body_contact_sphere_radius: List[List[List[float]]] = []
        self.ground_height: List[float] = []
        self.flat_ground: List[bool] = []
        self.default_force_plate_corners: List[List[np.ndarray]] = []
        self.grf_body_force_active: List[List[List[bool]]] = []
        self.grf_body_sphere_in_contact: List[List[List[bool]]] = []
        self.grf_body_off_force_plate: List[List[List[bool]]] = []
        self.probably_missing_grf: List[List[bool]] = []

        # Current estimate
        self.pose_trials: List[np.ndarray] = []
        self.updated_marker_map: Dict[str, Tuple[int, np.ndarray]] = {}
        self.body_masses: np.ndarray = np.zeros(0)
        self.group_coms: np.ndarray = np.zeros(0)
        self.group_inertias: np.ndarray = np.zeros(0)
        self.group_scales: np.ndarray = np.zeros(0)

        # Regularization targets
        self.original_poses: List[np.ndarray] = []
        self.original_group_masses: np.ndarray = np.zeros(0)
        self.original_group_coms: np.ndarray = np.zeros(0)
        self.original_group_inertias: np.ndarray = np.zeros(0)
        self.original_group_scales: np.ndarray = np.zeros(0)
        self.original_marker_offsets: Dict[str, np.ndarray] = {}

    def num_trials(self) -> int:
        return len(self.pose_trials)

    def num_frames(self, trial: int) -> int:
        return self.pose_trials[trial].shape[1]

    def has_missing_grf_flags(self) -> bool:
        return len(self.probably_missing_grf) >= len(self.pose_trials) and \
            all(len(self.probably_missing_grf[i]) >= self.pose_trials[i].shape[1]
                for i in range(len(self.pose_trials)))
