import contextlib
import numpy as np
from typing import List, Dict, Tuple, Optional
from rigid_body.model import RigidBodyModel
from dynamics_pass.config import DynamicsFitProblemConfig
from dynamics_pass.fit_problem import DynamicsFitProblem
from dynamics_pass.initialization import DynamicsInitialization, KinematicsInitialization, ForcePlate
from dynamics_pass.missing_grf_detection import estimate_foot_ground_contacts
from dynamics_pass.nlp_adapter import DynamicsFitNLP, NLPSolveResult, solve_nlp
from dynamics_pass.residual_helper import ResidualForceHelper
from utilities.acceleration_smoother import AccelerationSmoother
from memory_utils import copy_marker_observations, copy_matrix_trials
from exceptions import TrialPreprocessingError, TrialIndexError

DEFAULT_SMOOTHING_WEIGHT = 0.05
MIN_LINK_MASS = 0.01


class DynamicsFitter:
    """
    Orchestrates fitting a physically consistent model to a set of trials. The usual recipe is:

        init = DynamicsFitter.create_initialization(...)
        fitter.estimate_foot_ground_contacts(init)
        fitter.scale_link_masses_from_gravity(init)
        fitter.estimate_link_masses_from_acceleration(init, 50.0)
        fitter.run_optimization(init, ...)

    Every step reads and writes the shared DynamicsInitialization.
    """
    def __init__(self, model: RigidBodyModel, foot_bodies: List[int], tracking_markers: List[str]):
        self.model = model
        self.foot_bodies = foot_bodies
        self.tracking_markers = tracking_markers

        self.tolerance = 1e-8
        self.iteration_limit = 500
        self.lbfgs_history_length = 8
        self.check_derivatives = False
        self.print_frequency = 1
        self.silence_output = False

    def set_tolerance(self, value: float):
        self.tolerance = value

    def set_iteration_limit(self, value: int):
        self.iteration_limit = value

    def set_lbfgs_history_length(self, value: int):
        self.lbfgs_history_length = value

    def set_check_derivatives(self, value: bool):
        self.check_derivatives = value

    def set_print_frequency(self, value: int):
        self.print_frequency = value

    def set_silence_output(self, value: bool):
        self.silence_output = value

    def _log(self, message: str):
        if not self.silence_output:
            print(message, flush=True)

    ##########################################################################################
    # Initialization
    ##########################################################################################

    @staticmethod
    def create_initialization(model: RigidBodyModel,
                              marker_map: Dict[str, Tuple[int, np.ndarray]],
                              tracking_markers: List[str],
                              grf_bodies: List[int],
                              force_plate_trials: List[List[ForcePlate]],
                              pose_trials: List[np.ndarray],
                              frames_per_second: List[int],
                              marker_observation_trials: List[List[Dict[str, np.ndarray]]],
                              smoothing_weight: float = DEFAULT_SMOOTHING_WEIGHT) -> DynamicsInitialization:
        """
        Packages up the raw trial data, lightly smoothing the poses to take the worst of the jerk out of the
        accelerations, and assigns every force plate's wrench on every frame to the nearest GRF body.
        """
        num_trials = len(pose_trials)
        if len(force_plate_trials) != num_trials or len(frames_per_second) != num_trials or \
                len(marker_observation_trials) != num_trials:
            raise TrialPreprocessingError(
                f'Got {num_trials} pose trials, {len(force_plate_trials)} force plate trials, '
                f'{len(frames_per_second)} frame rates and {len(marker_observation_trials)} marker observation '
                f'trials. These must all match.')
        for trial in range(num_trials):
            poses = pose_trials[trial]
            if poses.shape[0] != model.num_dofs():
                raise TrialPreprocessingError(
                    f'Trial {trial} has poses with {poses.shape[0]} rows, but the model has {model.num_dofs()} DOFs.')
            if poses.shape[1] < 3:
                raise TrialPreprocessingError(
                    f'Trial {trial} has only {poses.shape[1]} frames, but at least 3 are needed to finite difference '
                    f'accelerations.')
            if frames_per_second[trial] <= 0:
                raise TrialPreprocessingError(
                    f'Trial {trial} has a non-positive frame rate {frames_per_second[trial]}.')
            if len(marker_observation_trials[trial]) < poses.shape[1]:
                raise TrialPreprocessingError(
                    f'Trial {trial} has {poses.shape[1]} frames of poses, but only '
                    f'{len(marker_observation_trials[trial])} frames of marker observations.')
            for i, plate in enumerate(force_plate_trials[trial]):
                if plate.num_frames() < poses.shape[1]:
                    raise TrialPreprocessingError(
                        f'Trial {trial} has {poses.shape[1]} frames of poses, but force plate {i} only has '
                        f'{plate.num_frames()} frames of data.')
            if np.any(np.isnan(poses)):
                raise TrialPreprocessingError(f'Trial {trial} has NaN values in its poses.')

        init = DynamicsInitialization()
        init.force_plate_trials = force_plate_trials
        init.original_pose_trials = copy_matrix_trials(pose_trials)
        init.marker_observation_trials = [copy_marker_observations(observations, marker_map.keys())
                                          for observations in marker_observation_trials]
        init.tracking_markers = list(tracking_markers)
        init.updated_marker_map = {name: (body, np.array(offset, dtype=np.float64))
                                   for name, (body, offset) in marker_map.items()}
        init.grf_bodies = list(grf_bodies)

        init.body_masses = model.get_link_masses()
        init.group_coms = model.get_group_coms()
        init.group_inertias = model.get_group_inertias()
        init.group_scales = model.get_group_scales()

        for trial in range(num_trials):
            smoother = AccelerationSmoother(pose_trials[trial].shape[1], smoothing_weight)
            init.pose_trials.append(smoother.smooth(init.original_pose_trials[trial]))
            init.trial_timesteps.append(1.0 / frames_per_second[trial])

        for trial in range(num_trials):
            poses = init.pose_trials[trial]
            grf = np.zeros((len(grf_bodies) * 6, poses.shape[1]))
            for t in range(poses.shape[1]):
                if len(grf_bodies) == 0:
                    continue
                with model.evaluate_at(poses[:, t]):
                    foot_positions = model.body_world_positions()[grf_bodies]
                for plate in force_plate_trials[trial]:
                    cop = plate.centers_of_pressure[t]
                    force = plate.forces[t]
                    # Move the wrench from the center of pressure to the world origin
                    world_wrench = np.concatenate([plate.moments[t] + np.cross(cop, force), force])
                    # Every plate's force has to go somewhere, so give it to the nearest foot
                    closest_foot = int(np.argmin(np.linalg.norm(foot_positions - cop, axis=1)))
                    grf[closest_foot * 6:closest_foot * 6 + 6, t] += world_wrench
            init.grf_trials.append(grf)

        init.original_poses = copy_matrix_trials(init.original_pose_trials)
        init.original_group_masses = model.get_group_masses()
        init.original_group_coms = model.get_group_coms()
        init.original_group_inertias = model.get_group_inertias()
        init.original_group_scales = model.get_group_scales()
        init.original_marker_offsets = {name: offset.copy() for name, (_, offset) in init.updated_marker_map.items()}
        return init

    @staticmethod
    def create_initialization_from_kinematics(model: RigidBodyModel,
                                              kinematics_init: KinematicsInitialization,
                                              tracking_markers: List[str],
                                              grf_bodies: List[int],
                                              force_plate_trials: List[List[ForcePlate]],
                                              frames_per_second: List[int],
                                              marker_observation_trials: List[List[Dict[str, np.ndarray]]],
                                              smoothing_weight: float = DEFAULT_SMOOTHING_WEIGHT) \
            -> DynamicsInitialization:
        """
        Builds an initialization from the output of a marker fitting pass, which concatenates every trial's poses,
        joint centers and joint axis together. The trials are split back apart using the number of frames of
        marker observations in each trial.
        """
        lengths = [len(observations) for observations in marker_observation_trials]
        if sum(lengths) != kinematics_init.poses.shape[1]:
            raise TrialPreprocessingError(
                f'The kinematics pass produced {kinematics_init.poses.shape[1]} frames of poses, but there are '
                f'{sum(lengths)} frames of marker observations across all trials.')
        starts = np.cumsum([0] + lengths)

        if kinematics_init.group_scales is not None:
            model.set_group_scales(kinematics_init.group_scales)

        pose_trials = [kinematics_init.poses[:, starts[i]:starts[i + 1]] for i in range(len(lengths))]
        init = DynamicsFitter.create_initialization(model,
                                                    kinematics_init.updated_marker_map,
                                                    tracking_markers,
                                                    grf_bodies,
                                                    force_plate_trials,
                                                    pose_trials,
                                                    frames_per_second,
                                                    marker_observation_trials,
                                                    smoothing_weight)

        init.joints = list(kinematics_init.joints)
        init.joint_weights = np.array(kinematics_init.joint_weights, dtype=np.float64)
        init.axis_weights = np.array(kinematics_init.axis_weights, dtype=np.float64)
        for i in range(len(lengths)):
            if kinematics_init.joint_centers.shape[0] > 0:
                init.joint_centers.append(np.array(kinematics_init.joint_centers[:, starts[i]:starts[i + 1]]))
            if kinematics_init.joint_axis.shape[0] > 0:
                init.joint_axis.append(np.array(kinematics_init.joint_axis[:, starts[i]:starts[i + 1]]))
        return init

    @staticmethod
    def apply_init_to_skeleton(model: RigidBodyModel, init: DynamicsInitialization):
        model.set_link_masses(init.body_masses)
        model.set_group_coms(init.group_coms)
        model.set_group_inertias(init.group_inertias)
        model.set_group_scales(init.group_scales)

    @contextlib.contextmanager
    def _applied(self, init: DynamicsInitialization):
        """
        Temporarily applies the initialization's parameters to the model.
        """
        link_masses = self.model.get_link_masses()
        coms = self.model.get_group_coms()
        inertias = self.model.get_group_inertias()
        scales = self.model.get_group_scales()
        try:
            DynamicsFitter.apply_init_to_skeleton(self.model, init)
            yield self.model
        finally:
            self.model.set_link_masses(link_masses)
            self.model.set_group_coms(coms)
            self.model.set_group_inertias(inertias)
            self.model.set_group_scales(scales)

    ##########################################################################################
    # Heuristic passes
    ##########################################################################################

    def estimate_foot_ground_contacts(self, init: DynamicsInitialization):
        with self._applied(init):
            estimate_foot_ground_contacts(self.model, init)

    def _check_trial(self, init: DynamicsInitialization, trial: int):
        if trial < 0 or trial >= init.num_trials():
            raise TrialIndexError(f'Trial {trial} requested, but there are only {init.num_trials()} trials.')

    def com_positions(self, init: DynamicsInitialization, trial: int) -> List[np.ndarray]:
        self._check_trial(init, trial)
        coms: List[np.ndarray] = []
        poses = init.pose_trials[trial]
        with self._applied(init):
            masses = self.model.get_link_masses()
            for t in range(poses.shape[1]):
                with self.model.evaluate_at(poses[:, t]):
                    body_coms = self.model.body_com_world_positions()
                coms.append(masses @ body_coms / np.sum(masses))
        return coms

    def com_accelerations(self, init: DynamicsInitialization, trial: int) -> List[np.ndarray]:
        dt = init.trial_timesteps[trial] if 0 <= trial < len(init.trial_timesteps) else 1.0
        coms = self.com_positions(init, trial)
        return [(coms[t + 2] - 2 * coms[t + 1] + coms[t]) / (dt * dt) for t in range(len(coms) - 2)]

    def implied_com_forces(self, init: DynamicsInitialization, trial: int, include_gravity: bool = True) \
            -> List[np.ndarray]:
        total_mass = float(np.sum(init.body_masses))
        gravity = self.model.gravity()
        forces: List[np.ndarray] = []
        for acc in self.com_accelerations(init, trial):
            # f + m * g = m * a
            forces.append(total_mass * (acc - gravity if include_gravity else acc))
        return forces

    def measured_grf_forces(self, init: DynamicsInitialization, trial: int) -> List[np.ndarray]:
        self._check_trial(init, trial)
        forces: List[np.ndarray] = []
        for t in range(init.pose_trials[trial].shape[1] - 2):
            total = np.zeros(3)
            for plate in init.force_plate_trials[trial]:
                total += plate.forces[t]
            forces.append(total)
        return forces

    def scale_link_masses_from_gravity(self, init: DynamicsInitialization):
        """
        Scales every link mass by the same ratio, so that the total mass best explains the vertical ground reaction
        forces given the vertical center of mass accelerations.
        """
        gravity = self.model.gravity()[1]
        total_grfs = 0.0
        total_accs = 0.0
        for trial in range(init.num_trials()):
            total_grfs += sum(grf[1] for grf in self.measured_grf_forces(init, trial))
            total_accs += sum(acc[1] - gravity for acc in self.com_accelerations(init, trial))
        if total_accs == 0.0 or total_grfs == 0.0:
            self._log('Not enough vertical GRF or acceleration data to scale masses from gravity, skipping.')
            return
        implied_total_mass = total_grfs / total_accs
        ratio = implied_total_mass / float(np.sum(init.body_masses))
        init.body_masses = init.body_masses * ratio
        self._log(f'Implied total mass {implied_total_mass:.3f} kg, scaled link masses by {ratio:.4f}')

    def estimate_link_masses_from_acceleration(self, init: DynamicsInitialization, regularization_weight: float):
        """
        Solves a linear least squares problem for the link masses that best explain the measured forces as the
        mass-weighted sum of each body's center of mass acceleration (minus gravity), regularized towards the
        current masses.
        """
        num_bodies = self.model.num_bodies()
        gravity = self.model.gravity()
        rows_a: List[np.ndarray] = []
        rows_b: List[np.ndarray] = []
        with self._applied(init):
            for trial in range(init.num_trials()):
                poses = init.pose_trials[trial]
                dt = init.trial_timesteps[trial]
                body_coms = []
                for t in range(poses.shape[1]):
                    with self.model.evaluate_at(poses[:, t]):
                        body_coms.append(self.model.body_com_world_positions())
                for t in range(poses.shape[1] - 2):
                    accs = (body_coms[t + 2] - 2 * body_coms[t + 1] + body_coms[t]) / (dt * dt)
                    rows_a.append((accs - gravity).T)
                    total_force = np.zeros(3)
                    for plate in init.force_plate_trials[trial]:
                        total_force += plate.forces[t]
                    rows_b.append(total_force)

        rows_a.append(regularization_weight * np.eye(num_bodies))
        rows_b.append(regularization_weight * init.body_masses)
        A = np.vstack(rows_a)
        b = np.concatenate(rows_b)
        masses = np.linalg.lstsq(A, b, rcond=None)[0]
        init.body_masses = np.maximum(masses, MIN_LINK_MASS)
        self._log(f'Estimated link masses from acceleration, total mass {np.sum(init.body_masses):.3f} kg')

    ##########################################################################################
    # Optimization
    ##########################################################################################

    def _check_problem_derivatives(self, problem: DynamicsFitProblem) -> bool:
        x = problem.flatten()
        any_error = problem.debug_errors(problem.finite_difference_gradient(x), problem.compute_gradient(x),
                                         'loss gradient')
        fd_jac = problem.finite_difference_constraints_jacobian(x)
        analytical_jac = problem.compute_constraints_jacobian()
        for row in range(fd_jac.shape[0]):
            if problem.debug_errors(fd_jac[row, :], analytical_jac[row, :], f'constraint {row} jacobian'):
                any_error = True
        if not any_error:
            self._log('Dynamics fit derivatives check out')
        return not any_error

    def run_optimization(self,
                         init: DynamicsInitialization,
                         residual_weight: float = 0.1,
                         marker_weight: float = 1.0,
                         include_masses: bool = True,
                         include_coms: bool = True,
                         include_inertias: bool = True,
                         include_poses: bool = False,
                         include_marker_offsets: bool = False,
                         include_body_scales: bool = False,
                         config: Optional[DynamicsFitProblemConfig] = None) -> NLPSolveResult:
        """
        Runs the full nonlinear optimization and writes the best solution found back into `init`. When `config` is
        given it is used as-is, otherwise one is built from the arguments (squaring the residual and marker weights,
        since the default costs are squared norms).
        """
        if config is None:
            config = DynamicsFitProblemConfig() \
                .set_residual_weight(residual_weight * residual_weight) \
                .set_marker_weight(marker_weight * marker_weight) \
                .set_include_masses(include_masses) \
                .set_include_coms(include_coms) \
                .set_include_inertias(include_inertias) \
                .set_include_poses(include_poses) \
                .set_include_marker_offsets(include_marker_offsets) \
                .set_include_body_scales(include_body_scales)

        DynamicsFitter.apply_init_to_skeleton(self.model, init)
        problem = DynamicsFitProblem(init, self.model, init.updated_marker_map, init.tracking_markers,
                                     init.grf_bodies, config)
        if self.check_derivatives:
            self._check_problem_derivatives(problem)

        nlp = DynamicsFitNLP(problem)
        self._log(f'Running dynamics fit over {len(problem.trials)} trials with {nlp.n} variables and {nlp.m} '
                  f'constraints')
        result = solve_nlp(nlp,
                           tolerance=self.tolerance,
                           iteration_limit=self.iteration_limit,
                           lbfgs_history_length=self.lbfgs_history_length,
                           print_frequency=self.print_frequency,
                           silent=self.silence_output)
        if not self.silence_output:
            problem.compute_loss(problem.flatten(), log_explanation=True)
        self._log(f'Dynamics fit finished: {result}')
        return result

    ##########################################################################################
    # Diagnostics
    ##########################################################################################

    def compute_average_marker_rmse(self, init: DynamicsInitialization) -> float:
        names = list(init.updated_marker_map.keys())
        markers = [init.updated_marker_map[name] for name in names]
        total = 0.0
        count = 0
        with self._applied(init):
            for trial in range(init.num_trials()):
                poses = init.pose_trials[trial]
                for t in range(poses.shape[1]):
                    with self.model.evaluate_at(poses[:, t]):
                        world = self.model.marker_world_positions(markers)
                    observed = init.marker_observation_trials[trial][t]
                    for i, name in enumerate(names):
                        if name in observed:
                            total += np.linalg.norm(world[i * 3:i * 3 + 3] - observed[name])
                            count += 1
        return total / count if count > 0 else 0.0

    def compute_average_residual_force(self, init: DynamicsInitialization) -> Tuple[float, float]:
        """
        Returns the average (force, torque) residual norms over every frame with usable GRF data.
        """
        helper = ResidualForceHelper(self.model, init.grf_bodies)
        torque_half, force_half = self.model.root_residual_halves()
        total_force = 0.0
        total_torque = 0.0
        count = 0
        with self._applied(init):
            for trial in range(init.num_trials()):
                poses = init.pose_trials[trial]
                dt = init.trial_timesteps[trial]
                for t in range(poses.shape[1] - 2):
                    if trial < len(init.probably_missing_grf) and init.probably_missing_grf[trial][t]:
                        continue
                    dq = (poses[:, t + 1] - poses[:, t]) / dt
                    ddq = (poses[:, t + 2] - 2 * poses[:, t + 1] + poses[:, t]) / (dt * dt)
                    residual = helper.calculate_residual(poses[:, t], dq, ddq, init.grf_trials[trial][:, t])
                    total_torque += np.linalg.norm(residual[torque_half])
                    total_force += np.linalg.norm(residual[force_half])
                    count += 1
        if count == 0:
            return 0.0, 0.0
        return total_force / count, total_torque / count

    def compute_average_real_force(self, init: DynamicsInitialization) -> Tuple[float, float]:
        total_force = 0.0
        total_torque = 0.0
        count = 0
        for trial in range(init.num_trials()):
            for t in range(init.pose_trials[trial].shape[1] - 2):
                force = np.zeros(3)
                torque = np.zeros(3)
                for plate in init.force_plate_trials[trial]:
                    force += plate.forces[t]
                    torque += plate.moments[t]
                total_force += np.linalg.norm(force)
                total_torque += np.linalg.norm(torque)
                count += 1
        if count == 0:
            return 0.0, 0.0
        return total_force / count, total_torque / count
