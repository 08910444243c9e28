import abc
import contextlib
import enum
import numpy as np
from typing import List, Tuple, Optional, Callable
from utilities.finite_difference import finite_difference

# A marker is attached to a body (by index) at an offset in that body's local frame
Marker = Tuple[int, np.ndarray]


class WithRespectTo(enum.Enum):
    POSITION = 'position'
    VELOCITY = 'velocity'
    ACCELERATION = 'acceleration'
    GROUP_MASSES = 'group_masses'
    GROUP_COMS = 'group_coms'
    GROUP_INERTIAS = 'group_inertias'
    GROUP_SCALES = 'group_scales'


# Quantities that change where things are in the world. Everything else (velocities, accelerations, inertial
# properties) leaves marker, joint and contact positions untouched.
KINEMATIC_WRT = (WithRespectTo.POSITION, WithRespectTo.GROUP_SCALES)


class RigidBodyModel(abc.ABC):
    """
    The rigid body dynamics engine that the dynamics fitter is built on top of. Implementations provide the primitive
    quantities (state, mass matrix, Coriolis and gravity forces, forward kinematics, wrench mapping), and this base
    class provides finite differenced derivatives of all of them, which implementations can override with closed
    forms where they have them.
    """

    # Initial step size for the Ridders-extrapolated finite differences
    FINITE_DIFFERENCE_EPS = 1e-3

    ##########################################################################################
    # State
    ##########################################################################################

    @abc.abstractmethod
    def num_dofs(self) -> int:
        pass

    @abc.abstractmethod
    def num_bodies(self) -> int:
        pass

    @abc.abstractmethod
    def num_scale_groups(self) -> int:
        pass

    @abc.abstractmethod
    def group_scale_dim(self) -> int:
        pass

    def num_root_dofs(self) -> int:
        return min(6, self.num_dofs())

    def root_residual_halves(self) -> Tuple[List[int], List[int]]:
        """
        Returns the indices of the (torque, force) halves of the root residual. Free joints put the rotational DOFs
        first.
        """
        root = self.num_root_dofs()
        return [i for i in range(min(3, root))], [i for i in range(3, root)]

    @abc.abstractmethod
    def gravity(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def get_positions(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def set_positions(self, q: np.ndarray):
        pass

    @abc.abstractmethod
    def get_velocities(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def set_velocities(self, dq: np.ndarray):
        pass

    @abc.abstractmethod
    def get_accelerations(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def set_accelerations(self, ddq: np.ndarray):
        pass

    @contextlib.contextmanager
    def evaluate_at(self,
                    q: Optional[np.ndarray] = None,
                    dq: Optional[np.ndarray] = None,
                    ddq: Optional[np.ndarray] = None):
        """
        Temporarily moves the model to the given state, restoring the previous positions, velocities and
        accelerations on exit.
        """
        original_q = self.get_positions().copy()
        original_dq = self.get_velocities().copy()
        original_ddq = self.get_accelerations().copy()
        try:
            if q is not None:
                self.set_positions(q)
            if dq is not None:
                self.set_velocities(dq)
            if ddq is not None:
                self.set_accelerations(ddq)
            yield self
        finally:
            self.set_positions(original_q)
            self.set_velocities(original_dq)
            self.set_accelerations(original_ddq)

    ##########################################################################################
    # Inertial and scaling parameters
    ##########################################################################################

    @abc.abstractmethod
    def get_group_masses(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def set_group_masses(self, masses: np.ndarray):
        pass

    @abc.abstractmethod
    def get_group_coms(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def set_group_coms(self, coms: np.ndarray):
        pass

    @abc.abstractmethod
    def get_group_inertias(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def set_group_inertias(self, inertias: np.ndarray):
        pass

    @abc.abstractmethod
    def get_group_scales(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def set_group_scales(self, scales: np.ndarray):
        pass

    @abc.abstractmethod
    def get_link_masses(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def set_link_masses(self, masses: np.ndarray):
        pass

    @abc.abstractmethod
    def get_wrt_bounds(self, wrt: WithRespectTo) -> Tuple[np.ndarray, np.ndarray]:
        """
        Returns the (lower, upper) bounds of the given quantity, as flat vectors of length wrt_dim(wrt).
        """
        pass

    def wrt_dim(self, wrt: WithRespectTo) -> int:
        if wrt in (WithRespectTo.POSITION, WithRespectTo.VELOCITY, WithRespectTo.ACCELERATION):
            return self.num_dofs()
        elif wrt == WithRespectTo.GROUP_MASSES:
            return self.num_scale_groups()
        elif wrt == WithRespectTo.GROUP_COMS:
            return self.num_scale_groups() * 3
        elif wrt == WithRespectTo.GROUP_INERTIAS:
            return self.num_scale_groups() * 6
        elif wrt == WithRespectTo.GROUP_SCALES:
            return self.group_scale_dim()
        raise ValueError(f'Unknown quantity to differentiate with respect to: {wrt}')

    def get_wrt(self, wrt: WithRespectTo) -> np.ndarray:
        getters = {
            WithRespectTo.POSITION: self.get_positions,
            WithRespectTo.VELOCITY: self.get_velocities,
            WithRespectTo.ACCELERATION: self.get_accelerations,
            WithRespectTo.GROUP_MASSES: self.get_group_masses,
            WithRespectTo.GROUP_COMS: self.get_group_coms,
            WithRespectTo.GROUP_INERTIAS: self.get_group_inertias,
            WithRespectTo.GROUP_SCALES: self.get_group_scales,
        }
        return getters[wrt]()

    def set_wrt(self, wrt: WithRespectTo, value: np.ndarray):
        setters = {
            WithRespectTo.POSITION: self.set_positions,
            WithRespectTo.VELOCITY: self.set_velocities,
            WithRespectTo.ACCELERATION: self.set_accelerations,
            WithRespectTo.GROUP_MASSES: self.set_group_masses,
            WithRespectTo.GROUP_COMS: self.set_group_coms,
            WithRespectTo.GROUP_INERTIAS: self.set_group_inertias,
            WithRespectTo.GROUP_SCALES: self.set_group_scales,
        }
        setters[wrt](value)

    ##########################################################################################
    # Dynamics and kinematics primitives
    ##########################################################################################

    @abc.abstractmethod
    def mass_matrix(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def coriolis_and_gravity_forces(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def wrench_to_generalized_forces(self, body: int, wrench: np.ndarray) -> np.ndarray:
        """
        Maps a world wrench (moment, force), expressed about the world origin and applied to `body`, into
        generalized forces.
        """
        pass

    @abc.abstractmethod
    def marker_world_positions(self, markers: List[Marker]) -> np.ndarray:
        pass

    @abc.abstractmethod
    def joint_world_positions(self, joints: List[int]) -> np.ndarray:
        pass

    @abc.abstractmethod
    def body_world_positions(self) -> np.ndarray:
        """
        Returns the world positions of the body frame origins, as a (num_bodies, 3) array.
        """
        pass

    @abc.abstractmethod
    def body_com_world_positions(self) -> np.ndarray:
        pass

    @abc.abstractmethod
    def child_bodies(self, body: int) -> List[int]:
        pass

    @abc.abstractmethod
    def body_index(self, name: str) -> int:
        pass

    @abc.abstractmethod
    def body_name(self, body: int) -> str:
        pass

    ##########################################################################################
    # Derivatives
    ##########################################################################################

    def _finite_difference_wrt(self, fn: Callable[[], np.ndarray], wrt: WithRespectTo, out_dim: int) -> np.ndarray:
        original = self.get_wrt(wrt).copy()

        def perturbed(eps: float, index: int):
            tweaked = original.copy()
            tweaked[index] += eps
            self.set_wrt(wrt, tweaked)
            return fn()

        try:
            return finite_difference(perturbed, len(original), self.FINITE_DIFFERENCE_EPS, out_dim=out_dim)
        finally:
            self.set_wrt(wrt, original)

    def jacobian_of_m(self, ddq: np.ndarray, wrt: WithRespectTo) -> np.ndarray:
        """
        Returns d(M * ddq)/d(wrt), holding ddq fixed.
        """
        if wrt == WithRespectTo.ACCELERATION:
            return self.mass_matrix()
        if wrt == WithRespectTo.VELOCITY:
            return np.zeros((self.num_dofs(), self.num_dofs()))
        return self._finite_difference_wrt(lambda: self.mass_matrix() @ ddq, wrt, self.num_dofs())

    def jacobian_of_c(self, wrt: WithRespectTo) -> np.ndarray:
        if wrt == WithRespectTo.ACCELERATION:
            return np.zeros((self.num_dofs(), self.num_dofs()))
        return self._finite_difference_wrt(self.coriolis_and_gravity_forces, wrt, self.num_dofs())

    def jacobian_of_wrench_forces(self, body: int, wrench: np.ndarray, wrt: WithRespectTo) -> np.ndarray:
        if wrt not in KINEMATIC_WRT:
            return np.zeros((self.num_dofs(), self.wrt_dim(wrt)))
        return self._finite_difference_wrt(lambda: self.wrench_to_generalized_forces(body, wrench), wrt,
                                           self.num_dofs())

    def marker_world_positions_jacobian_wrt(self, markers: List[Marker], wrt: WithRespectTo) -> np.ndarray:
        if wrt not in KINEMATIC_WRT:
            return np.zeros((len(markers) * 3, self.wrt_dim(wrt)))
        return self._finite_difference_wrt(lambda: self.marker_world_positions(markers), wrt, len(markers) * 3)

    def marker_world_positions_jacobian_wrt_marker_offsets(self, markers: List[Marker]) -> np.ndarray:
        original = np.concatenate([np.asarray(offset, dtype=np.float64) for _, offset in markers]) \
            if len(markers) > 0 else np.zeros(0)

        def perturbed(eps: float, index: int):
            tweaked = original.copy()
            tweaked[index] += eps
            nudged = [(markers[i][0], tweaked[i * 3:i * 3 + 3]) for i in range(len(markers))]
            return self.marker_world_positions(nudged)

        return finite_difference(perturbed, len(original), self.FINITE_DIFFERENCE_EPS, out_dim=len(markers) * 3)

    def joint_world_positions_jacobian_wrt(self, joints: List[int], wrt: WithRespectTo) -> np.ndarray:
        if wrt not in KINEMATIC_WRT:
            return np.zeros((len(joints) * 3, self.wrt_dim(wrt)))
        return self._finite_difference_wrt(lambda: self.joint_world_positions(joints), wrt, len(joints) * 3)
