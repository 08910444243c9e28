import numpy as np
import scipy.sparse
from typing import List, Dict, Tuple, Optional
from rigid_body.model import RigidBodyModel, WithRespectTo, Marker
from dynamics_pass.config import DynamicsFitProblemConfig
from dynamics_pass.initialization import DynamicsInitialization
from dynamics_pass.problem_layout import ProblemLayout, Block, BlockKind
from dynamics_pass.residual_helper import ResidualForceHelper
from utilities.finite_difference import finite_difference
from exceptions import MissingGRFStatusError, NumericalAnomalyError, ProblemLayoutError

MARKER_OFFSET_BOUND = 5.0
LOSS_FINITE_DIFFERENCE_EPS = 1e-3
LOSS_PLAIN_FINITE_DIFFERENCE_EPS = 1e-7
CONSTRAINT_FINITE_DIFFERENCE_EPS = 1e-6

# The parameter blocks that show up in the residual, and what they correspond to on the model
RESIDUAL_STATIC_WRT = [
    (BlockKind.MASSES, WithRespectTo.GROUP_MASSES),
    (BlockKind.COMS, WithRespectTo.GROUP_COMS),
    (BlockKind.INERTIAS, WithRespectTo.GROUP_INERTIAS),
    (BlockKind.BODY_SCALES, WithRespectTo.GROUP_SCALES),
]


class SparseJacobian:
    """
    Accumulates (row, column, value) triplets for a sparse matrix of a fixed shape.
    """
    def __init__(self, num_rows: int, num_cols: int):
        self.shape = (num_rows, num_cols)
        self.rows: List[int] = []
        self.cols: List[int] = []
        self.values: List[float] = []

    def add(self, row: int, col: int, value: float):
        self.rows.append(row)
        self.cols.append(col)
        self.values.append(value)

    def __len__(self):
        return len(self.values)

    def structure(self) -> Tuple[np.ndarray, np.ndarray]:
        return np.array(self.rows, dtype=np.int64), np.array(self.cols, dtype=np.int64)

    def values_array(self) -> np.ndarray:
        return np.array(self.values, dtype=np.float64)

    def to_csr(self) -> scipy.sparse.csr_matrix:
        return scipy.sparse.csr_matrix((self.values_array(), self.structure()), shape=self.shape)

    def to_dense(self) -> np.ndarray:
        return self.to_csr().toarray()


class DynamicsFitProblem:
    """
    The big joint optimization over body inertial properties, body scales, marker offsets and the motion of every
    selected trial. The loss trades off the root residual forces implied by the motion and the measured ground
    reaction forces against marker and joint center tracking, while regularizing everything towards the values we
    started with. When poses are free, velocities and accelerations are decision variables too, tied back to the
    poses by linear finite difference constraints.
    """
    def __init__(self,
                 init: DynamicsInitialization,
                 model: RigidBodyModel,
                 marker_map: Dict[str, Tuple[int, np.ndarray]],
                 tracking_markers: List[str],
                 foot_bodies: List[int],
                 config: Optional[DynamicsFitProblemConfig] = None):
        self.init = init
        self.model = model
        self.config = config if config is not None else DynamicsFitProblemConfig()
        self.foot_bodies = foot_bodies
        self.residual_helper = ResidualForceHelper(model, foot_bodies)

        self.marker_names: List[str] = list(marker_map.keys())
        self.markers: List[Marker] = [(marker_map[name][0], np.array(marker_map[name][1], dtype=np.float64))
                                      for name in self.marker_names]
        tracking = set(tracking_markers)
        self.marker_is_tracking: List[bool] = [name in tracking for name in self.marker_names]

        self.trials: List[int] = self.config.select_trials(init.num_trials())
        self.poses: Dict[int, np.ndarray] = {}
        self.vels: Dict[int, np.ndarray] = {}
        self.accs: Dict[int, np.ndarray] = {}
        for trial in self.trials:
            dt = init.trial_timesteps[trial]
            poses = np.array(init.pose_trials[trial], dtype=np.float64)
            self.poses[trial] = poses
            self.vels[trial] = (poses[:, 1:] - poses[:, :-1]) / dt
            self.accs[trial] = (poses[:, 2:] - 2 * poses[:, 1:-1] + poses[:, :-2]) / (dt * dt)

        self.total_timesteps = sum(self.poses[trial].shape[1] for trial in self.trials)
        self.total_acc_timesteps = sum(self.accs[trial].shape[1] for trial in self.trials)
        self.observed_marker_count = 0
        known = set(self.marker_names)
        for trial in self.trials:
            for frame in init.marker_observation_trials[trial]:
                self.observed_marker_count += sum(1 for name in frame if name in known)

        self.layout = ProblemLayout.build(self.config,
                                          model.num_scale_groups(),
                                          model.group_scale_dim(),
                                          len(self.markers),
                                          model.num_dofs(),
                                          [(trial, self.poses[trial].shape[1]) for trial in self.trials])
        self._last_x: Optional[np.ndarray] = None

    ##########################################################################################
    # Decision vector
    ##########################################################################################

    def get_problem_size(self) -> int:
        return self.layout.size

    def _read_block(self, block: Block) -> np.ndarray:
        if block.kind == BlockKind.MASSES:
            return self.model.get_group_masses()
        elif block.kind == BlockKind.COMS:
            return self.model.get_group_coms()
        elif block.kind == BlockKind.INERTIAS:
            return self.model.get_group_inertias()
        elif block.kind == BlockKind.BODY_SCALES:
            return self.model.get_group_scales()
        elif block.kind == BlockKind.MARKER_OFFSETS:
            return np.concatenate([offset for _, offset in self.markers]) if len(self.markers) > 0 else np.zeros(0)
        elif block.kind == BlockKind.POSE:
            return self.poses[block.trial][:, block.timestep]
        elif block.kind == BlockKind.VELOCITY:
            return self.vels[block.trial][:, block.timestep]
        return self.accs[block.trial][:, block.timestep]

    def _write_block(self, block: Block, values: np.ndarray):
        if block.kind == BlockKind.MASSES:
            self.model.set_group_masses(values)
        elif block.kind == BlockKind.COMS:
            self.model.set_group_coms(values)
        elif block.kind == BlockKind.INERTIAS:
            self.model.set_group_inertias(values)
        elif block.kind == BlockKind.BODY_SCALES:
            self.model.set_group_scales(values)
        elif block.kind == BlockKind.MARKER_OFFSETS:
            self.markers = [(self.markers[i][0], values[i * 3:i * 3 + 3].copy()) for i in range(len(self.markers))]
        elif block.kind == BlockKind.POSE:
            self.poses[block.trial][:, block.timestep] = values
        elif block.kind == BlockKind.VELOCITY:
            self.vels[block.trial][:, block.timestep] = values
        else:
            self.accs[block.trial][:, block.timestep] = values

    def _block_bounds(self, block: Block) -> Tuple[np.ndarray, np.ndarray]:
        wrt_of_kind = {
            BlockKind.MASSES: WithRespectTo.GROUP_MASSES,
            BlockKind.COMS: WithRespectTo.GROUP_COMS,
            BlockKind.INERTIAS: WithRespectTo.GROUP_INERTIAS,
            BlockKind.BODY_SCALES: WithRespectTo.GROUP_SCALES,
            BlockKind.POSE: WithRespectTo.POSITION,
            BlockKind.VELOCITY: WithRespectTo.VELOCITY,
            BlockKind.ACCELERATION: WithRespectTo.ACCELERATION,
        }
        if block.kind == BlockKind.MARKER_OFFSETS:
            return np.full(block.size, -MARKER_OFFSET_BOUND), np.full(block.size, MARKER_OFFSET_BOUND)
        return self.model.get_wrt_bounds(wrt_of_kind[block.kind])

    def flatten(self) -> np.ndarray:
        x = np.zeros(self.layout.size)
        for block in self.layout.blocks:
            x[block.indices] = self._read_block(block)
        return x

    def flatten_lower_bound(self) -> np.ndarray:
        x = np.zeros(self.layout.size)
        for block in self.layout.blocks:
            x[block.indices] = self._block_bounds(block)[0]
        return x

    def flatten_upper_bound(self) -> np.ndarray:
        x = np.zeros(self.layout.size)
        for block in self.layout.blocks:
            x[block.indices] = self._block_bounds(block)[1]
        return x

    def unflatten(self, x: np.ndarray):
        # Solvers often evaluate the loss, gradient and constraints at the same point in a row
        if self._last_x is not None and self._last_x.shape == x.shape and np.array_equal(self._last_x, x):
            return
        for block in self.layout.blocks:
            self._write_block(block, np.array(x[block.indices], dtype=np.float64))
        self._last_x = np.array(x, dtype=np.float64)

    def last_x(self) -> Optional[np.ndarray]:
        return self._last_x

    ##########################################################################################
    # Loss and gradient
    ##########################################################################################

    def _check_missing_grf(self):
        if not self.init.has_missing_grf_flags():
            raise MissingGRFStatusError(
                'The initialization has no missing GRF flags for some of its frames. Call '
                'estimate_foot_ground_contacts() on the initialization before building the dynamics fit problem.')

    def _residual_active(self, trial: int, t: int) -> bool:
        return t < self.accs[trial].shape[1] and not self.init.probably_missing_grf[trial][t]

    def _marker_offset_weight(self, i: int) -> float:
        if self.marker_is_tracking[i]:
            return self.config.regularize_tracking_marker_offsets
        return self.config.regularize_anatomical_marker_offsets

    def _joint_axis_available(self, trial: int) -> bool:
        return trial < len(self.init.joint_axis) and self.init.joint_axis[trial].shape[0] >= 6 * len(self.init.joints)

    def _joint_errors(self, trial: int, t: int, joint_positions: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Returns the (joint center error, error perpendicular to the joint axis) for every tracked joint, as flat
        vectors with 3 entries per joint.
        """
        num_joints = len(self.init.joints)
        centers = self.init.joint_centers[trial][:, t]
        center_diff = joint_positions - centers[:num_joints * 3]
        axis_diff = np.zeros(num_joints * 3)
        if self._joint_axis_available(trial):
            axis = self.init.joint_axis[trial][:, t]
            for i in range(num_joints):
                diff = joint_positions[i * 3:i * 3 + 3] - axis[i * 6:i * 6 + 3]
                direction = axis[i * 6 + 3:i * 6 + 6]
                length = np.linalg.norm(direction)
                if length > 0:
                    direction = direction / length
                    diff = diff - direction * (direction @ diff)
                axis_diff[i * 3:i * 3 + 3] = diff
        return center_diff, axis_diff

    @staticmethod
    def _check_nan(term: str, value: float):
        if np.isnan(value):
            raise NumericalAnomalyError(term, f'The {term} term of the loss is NaN.')

    def compute_loss(self, x: np.ndarray, log_explanation: bool = False) -> float:
        self.unflatten(x)
        self._check_missing_grf()
        cfg = self.config
        num_groups = self.model.num_scale_groups()

        terms: List[Tuple[str, float]] = []
        if self.layout.find(BlockKind.MASSES) is not None:
            diff = self.model.get_group_masses() - self.init.original_group_masses
            terms.append(('massReg', cfg.regularize_masses / num_groups * float(diff @ diff)))
        if self.layout.find(BlockKind.COMS) is not None:
            diff = self.model.get_group_coms() - self.init.original_group_coms
            terms.append(('comReg', cfg.regularize_coms / num_groups * float(diff @ diff)))
        if self.layout.find(BlockKind.INERTIAS) is not None:
            diff = self.model.get_group_inertias() - self.init.original_group_inertias
            terms.append(('inertiaReg', cfg.regularize_inertias / num_groups * float(diff @ diff)))
        if self.layout.find(BlockKind.BODY_SCALES) is not None:
            diff = self.model.get_group_scales() - self.init.original_group_scales
            terms.append(('scaleReg', cfg.regularize_body_scales / num_groups * float(diff @ diff)))
        if self.layout.find(BlockKind.MARKER_OFFSETS) is not None:
            marker_reg = 0.0
            for i, name in enumerate(self.marker_names):
                if name in self.init.original_marker_offsets:
                    diff = self.markers[i][1] - self.init.original_marker_offsets[name]
                    marker_reg += self._marker_offset_weight(i) / len(self.markers) * float(diff @ diff)
            terms.append(('markerReg', marker_reg))
        for name, value in terms:
            self._check_nan(name, value)

        residual = 0.0
        marker = 0.0
        joint = 0.0
        axis = 0.0
        pose_reg = 0.0
        for trial in self.trials:
            poses = self.poses[trial]
            grf = self.init.grf_trials[trial]
            observations = self.init.marker_observation_trials[trial]
            for t in range(poses.shape[1]):
                q = poses[:, t]
                if self._residual_active(trial, t):
                    residual += cfg.residual_weight / self.total_acc_timesteps * \
                        self.residual_helper.calculate_residual_norm(q, self.vels[trial][:, t],
                                                                     self.accs[trial][:, t], grf[:, t],
                                                                     cfg.residual_use_l1)
                with self.model.evaluate_at(q):
                    if len(self.markers) > 0 and self.observed_marker_count > 0:
                        world = self.model.marker_world_positions(self.markers)
                        for i, name in enumerate(self.marker_names):
                            if name in observations[t]:
                                diff = world[i * 3:i * 3 + 3] - observations[t][name]
                                marker += np.linalg.norm(diff) if cfg.marker_use_l1 else float(diff @ diff)
                    if len(self.init.joints) > 0:
                        center_diff, axis_diff = self._joint_errors(
                            trial, t, self.model.joint_world_positions(self.init.joints))
                        for i in range(len(self.init.joints)):
                            joint += float(np.sum(center_diff[i * 3:i * 3 + 3] ** 2)) * self.init.joint_weights[i]
                            if self._joint_axis_available(trial):
                                axis += float(np.sum(axis_diff[i * 3:i * 3 + 3] ** 2)) * self.init.axis_weights[i]
                diff = q - self.init.original_poses[trial][:, t]
                pose_reg += cfg.regularize_poses / self.total_timesteps * float(diff @ diff)

        marker *= cfg.marker_weight
        if self.observed_marker_count > 0:
            marker /= self.observed_marker_count
        terms.append(('residual', residual))
        terms.append(('marker', marker))
        terms.append(('joint', joint * cfg.joint_weight))
        terms.append(('axis', axis * cfg.joint_weight))
        terms.append(('poseReg', pose_reg))
        for name, value in terms[-5:]:
            self._check_nan(name, value)

        if log_explanation:
            print('[' + ', '.join(f'{name}={value:.6g}' for name, value in terms) + ']', flush=True)
        return float(sum(value for _, value in terms))

    def compute_gradient(self, x: np.ndarray) -> np.ndarray:
        self.unflatten(x)
        self._check_missing_grf()
        cfg = self.config
        num_groups = self.model.num_scale_groups()
        grad = np.zeros(self.layout.size)

        regularized = [
            (BlockKind.MASSES, self.model.get_group_masses, self.init.original_group_masses, cfg.regularize_masses),
            (BlockKind.COMS, self.model.get_group_coms, self.init.original_group_coms, cfg.regularize_coms),
            (BlockKind.INERTIAS, self.model.get_group_inertias, self.init.original_group_inertias,
             cfg.regularize_inertias),
            (BlockKind.BODY_SCALES, self.model.get_group_scales, self.init.original_group_scales,
             cfg.regularize_body_scales),
        ]
        for kind, getter, original, weight in regularized:
            block = self.layout.find(kind)
            if block is not None:
                grad[block.indices] += 2 * weight / num_groups * (getter() - original)
        offsets_block = self.layout.find(BlockKind.MARKER_OFFSETS)
        if offsets_block is not None:
            for i, name in enumerate(self.marker_names):
                if name in self.init.original_marker_offsets:
                    start = offsets_block.start + i * 3
                    grad[start:start + 3] += 2 * self._marker_offset_weight(i) / len(self.markers) * \
                        (self.markers[i][1] - self.init.original_marker_offsets[name])
        scales_block = self.layout.find(BlockKind.BODY_SCALES)

        for trial in self.trials:
            poses = self.poses[trial]
            grf = self.init.grf_trials[trial]
            observations = self.init.marker_observation_trials[trial]
            for t in range(poses.shape[1]):
                q = poses[:, t]
                pose_block = self.layout.find(BlockKind.POSE, trial, t)
                with self.model.evaluate_at(q):
                    if len(self.markers) > 0 and self.observed_marker_count > 0:
                        world = self.model.marker_world_positions(self.markers)
                        marker_grad = np.zeros(len(self.markers) * 3)
                        for i, name in enumerate(self.marker_names):
                            if name in observations[t]:
                                diff = world[i * 3:i * 3 + 3] - observations[t][name]
                                if cfg.marker_use_l1:
                                    length = np.linalg.norm(diff)
                                    diff = diff / length if length > 0 else np.zeros(3)
                                else:
                                    diff = 2 * diff
                                marker_grad[i * 3:i * 3 + 3] = cfg.marker_weight / self.observed_marker_count * diff
                        if pose_block is not None:
                            grad[pose_block.indices] += self.model.marker_world_positions_jacobian_wrt(
                                self.markers, WithRespectTo.POSITION).T @ marker_grad
                        if scales_block is not None:
                            grad[scales_block.indices] += self.model.marker_world_positions_jacobian_wrt(
                                self.markers, WithRespectTo.GROUP_SCALES).T @ marker_grad
                        if offsets_block is not None:
                            grad[offsets_block.indices] += \
                                self.model.marker_world_positions_jacobian_wrt_marker_offsets(self.markers).T @ \
                                marker_grad
                    if len(self.init.joints) > 0:
                        center_diff, axis_diff = self._joint_errors(
                            trial, t, self.model.joint_world_positions(self.init.joints))
                        joint_grad = np.zeros(len(self.init.joints) * 3)
                        for i in range(len(self.init.joints)):
                            joint_grad[i * 3:i * 3 + 3] = 2 * center_diff[i * 3:i * 3 + 3] * self.init.joint_weights[i]
                            if self._joint_axis_available(trial):
                                joint_grad[i * 3:i * 3 + 3] += 2 * axis_diff[i * 3:i * 3 + 3] * \
                                    self.init.axis_weights[i]
                        joint_grad *= cfg.joint_weight
                        if pose_block is not None:
                            grad[pose_block.indices] += self.model.joint_world_positions_jacobian_wrt(
                                self.init.joints, WithRespectTo.POSITION).T @ joint_grad
                        if scales_block is not None:
                            grad[scales_block.indices] += self.model.joint_world_positions_jacobian_wrt(
                                self.init.joints, WithRespectTo.GROUP_SCALES).T @ joint_grad

                if pose_block is not None:
                    grad[pose_block.indices] += 2 * cfg.regularize_poses / self.total_timesteps * \
                        (q - self.init.original_poses[trial][:, t])

                if self._residual_active(trial, t):
                    scale = cfg.residual_weight / self.total_acc_timesteps
                    args = (q, self.vels[trial][:, t], self.accs[trial][:, t], grf[:, t])
                    for kind, wrt in RESIDUAL_STATIC_WRT:
                        block = self.layout.find(kind)
                        if block is not None:
                            grad[block.indices] += scale * self.residual_helper.calculate_residual_norm_gradient_wrt(
                                *args, wrt, cfg.residual_use_l1)
                    dynamic = [
                        (pose_block, WithRespectTo.POSITION),
                        (self.layout.find(BlockKind.VELOCITY, trial, t), WithRespectTo.VELOCITY),
                        (self.layout.find(BlockKind.ACCELERATION, trial, t), WithRespectTo.ACCELERATION),
                    ]
                    for block, wrt in dynamic:
                        if block is not None:
                            grad[block.indices] += scale * self.residual_helper.calculate_residual_norm_gradient_wrt(
                                *args, wrt, cfg.residual_use_l1)
        return grad

    def finite_difference_gradient(self, x: np.ndarray, use_ridders: bool = True) -> np.ndarray:
        x = np.array(x, dtype=np.float64)

        def perturbed(eps: float, index: int):
            tweaked = x.copy()
            tweaked[index] += eps
            return self.compute_loss(tweaked)

        eps = LOSS_FINITE_DIFFERENCE_EPS if use_ridders else LOSS_PLAIN_FINITE_DIFFERENCE_EPS
        grad = finite_difference(perturbed, len(x), eps, use_ridders=use_ridders)
        self.unflatten(x)
        return grad

    ##########################################################################################
    # Constraints
    ##########################################################################################

    def get_constraint_size(self) -> int:
        if not self.config.include_poses:
            return 0
        dofs = self.model.num_dofs()
        return sum(self.accs[trial].shape[1] * dofs * 2 + dofs for trial in self.trials)

    def compute_constraints(self, x: np.ndarray) -> np.ndarray:
        self.unflatten(x)
        if not self.config.include_poses:
            return np.zeros(0)
        constraints = []
        for trial in self.trials:
            dt = self.init.trial_timesteps[trial]
            poses = self.poses[trial]
            vels = self.vels[trial]
            accs = self.accs[trial]
            for t in range(accs.shape[1]):
                constraints.append(vels[:, t] * dt - (poses[:, t + 1] - poses[:, t]))
                constraints.append(accs[:, t] * dt - (vels[:, t + 1] - vels[:, t]))
            last = poses.shape[1] - 2
            constraints.append(vels[:, last] * dt - (poses[:, last + 1] - poses[:, last]))
        return np.concatenate(constraints) if len(constraints) > 0 else np.zeros(0)

    def compute_sparse_constraints_jacobian(self) -> SparseJacobian:
        """
        The constraints are linear, so this doesn't depend on the current decision vector.
        """
        jac = SparseJacobian(self.get_constraint_size(), self.layout.size)
        if not self.config.include_poses:
            return jac
        dofs = self.model.num_dofs()
        row = 0
        for trial in self.trials:
            dt = self.init.trial_timesteps[trial]
            num_frames = self.poses[trial].shape[1]
            for t in range(num_frames - 1):
                q0 = self.layout.find(BlockKind.POSE, trial, t).start
                q1 = self.layout.find(BlockKind.POSE, trial, t + 1).start
                v0 = self.layout.find(BlockKind.VELOCITY, trial, t).start
                for i in range(dofs):
                    jac.add(row + i, q0 + i, 1.0)
                    jac.add(row + i, q1 + i, -1.0)
                    jac.add(row + i, v0 + i, dt)
                row += dofs
                if t < num_frames - 2:
                    v1 = self.layout.find(BlockKind.VELOCITY, trial, t + 1).start
                    a0 = self.layout.find(BlockKind.ACCELERATION, trial, t).start
                    for i in range(dofs):
                        jac.add(row + i, v0 + i, 1.0)
                        jac.add(row + i, v1 + i, -1.0)
                        jac.add(row + i, a0 + i, dt)
                    row += dofs
        if row != jac.shape[0]:
            raise ProblemLayoutError(f'The constraint Jacobian filled {row} rows, but there are {jac.shape[0]} '
                                     f'constraints.')
        return jac

    def compute_constraints_jacobian(self) -> np.ndarray:
        return self.compute_sparse_constraints_jacobian().to_dense()

    def finite_difference_constraints_jacobian(self, x: Optional[np.ndarray] = None) -> np.ndarray:
        x = self.flatten() if x is None else np.array(x, dtype=np.float64)

        def perturbed(eps: float, index: int):
            tweaked = x.copy()
            tweaked[index] += eps
            return self.compute_constraints(tweaked)

        jac = finite_difference(perturbed, len(x), CONSTRAINT_FINITE_DIFFERENCE_EPS, use_ridders=False,
                                out_dim=self.get_constraint_size())
        self.unflatten(x)
        return jac.reshape((self.get_constraint_size(), len(x)))

    ##########################################################################################
    # Results
    ##########################################################################################

    def finalize_solution(self, x: np.ndarray):
        self.unflatten(x)
        if self.layout.find(BlockKind.MASSES) is not None:
            self.init.body_masses = self.model.get_link_masses()
        if self.layout.find(BlockKind.COMS) is not None:
            self.init.group_coms = self.model.get_group_coms()
        if self.layout.find(BlockKind.INERTIAS) is not None:
            self.init.group_inertias = self.model.get_group_inertias()
        if self.layout.find(BlockKind.BODY_SCALES) is not None:
            self.init.group_scales = self.model.get_group_scales()
        if self.layout.find(BlockKind.MARKER_OFFSETS) is not None:
            for name, (body, offset) in zip(self.marker_names, self.markers):
                self.init.updated_marker_map[name] = (body, offset.copy())
        if self.config.include_poses:
            for trial in self.trials:
                self.init.pose_trials[trial] = self.poses[trial].copy()

    def debug_errors(self, fd: np.ndarray, analytical: np.ndarray, name: str, tolerance: float = 1e-6) -> bool:
        """
        Prints every component where a finite differenced and an analytical vector disagree, comparing relative
        error above magnitude 1 and absolute error below it. Returns True if anything disagreed.
        """
        any_error = False
        for i in range(len(fd)):
            error = abs(fd[i] - analytical[i])
            if abs(fd[i]) > 1.0:
                error /= abs(fd[i])
            if error > tolerance:
                if not any_error:
                    print(f'Error on {name}:', flush=True)
                any_error = True
                print(f'  {self.layout.describe(i)}: fd={fd[i]} analytical={analytical[i]} error={error}',
                      flush=True)
        return any_error
