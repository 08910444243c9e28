import numpy as np
from typing import List, Tuple, Optional, Dict
from rigid_body.model import RigidBodyModel, WithRespectTo, Marker

DEFAULT_MASS_BOUNDS = (1e-3, 1e3)
DEFAULT_COM_BOUNDS = (-10.0, 10.0)
DEFAULT_INERTIA_BOUNDS = (-100.0, 100.0)
DEFAULT_SCALE_BOUNDS = (0.1, 10.0)


def _rotation(angle: float) -> np.ndarray:
    c = np.cos(angle)
    s = np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _planar(v: np.ndarray) -> np.ndarray:
    return np.array([v[0], v[1], 0.0])


class PlanarBody:
    def __init__(self,
                 name: str,
                 parent: int = -1,
                 joint_offset: Optional[np.ndarray] = None,
                 mass: float = 1.0,
                 com: Optional[np.ndarray] = None,
                 inertia: Optional[np.ndarray] = None):
        self.name = name
        self.parent = parent
        self.joint_offset = np.zeros(3) if joint_offset is None else np.array(joint_offset, dtype=np.float64)
        self.mass = mass
        self.com = np.zeros(3) if com is None else np.array(com, dtype=np.float64)
        # Ixx, Iyy, Izz, Ixy, Ixz, Iyz. Only Izz matters for motion in the x-y plane.
        self.inertia = np.array([0.1, 0.1, 0.1, 0.0, 0.0, 0.0]) if inertia is None \
            else np.array(inertia, dtype=np.float64)


class PlanarSkeleton(RigidBodyModel):
    """
    A tree of rigid bodies moving in the world x-y plane, with y up. The root body (index 0) translates in x and y,
    and optionally rotates about z. Every other body hangs off its parent on a revolute joint about z, located at
    `joint_offset` in the parent's (scaled) frame. Parents must come before their children.

    Bodies are grouped into scale groups that share a mass, a center of mass offset, an inertia and a 3-axis scale.
    Scales stretch joint offsets, center of mass offsets and marker offsets.
    """
    def __init__(self,
                 bodies: List[PlanarBody],
                 root_rotates: bool = True,
                 scale_groups: Optional[List[List[int]]] = None,
                 gravity: float = -9.81):
        if len(bodies) == 0:
            raise ValueError('A skeleton needs at least one body')
        if bodies[0].parent != -1:
            raise ValueError('The first body must be the root')
        for k in range(1, len(bodies)):
            if not (0 <= bodies[k].parent < k):
                raise ValueError(f'Body {bodies[k].name} must come after its parent')

        self.bodies = bodies
        self.root_rotates = root_rotates
        self._gravity = np.array([0.0, gravity, 0.0])

        self._rotational_dof: List[Optional[int]] = []
        dofs = 3 if root_rotates else 2
        self._rotational_dof.append(2 if root_rotates else None)
        for k in range(1, len(bodies)):
            self._rotational_dof.append(dofs)
            dofs += 1
        self._num_dofs = dofs

        self._paths: List[List[int]] = []
        for k, body in enumerate(bodies):
            path = [k] if body.parent < 0 else self._paths[body.parent] + [k]
            self._paths.append(path)

        if scale_groups is None:
            scale_groups = [[k] for k in range(len(bodies))]
        self.scale_groups = scale_groups
        self._group_of_body = [-1] * len(bodies)
        for g, group in enumerate(scale_groups):
            for k in group:
                self._group_of_body[k] = g
        if -1 in self._group_of_body:
            raise ValueError('Every body must belong to exactly one scale group')

        num_groups = len(scale_groups)
        self._group_masses = np.array([np.mean([bodies[k].mass for k in group]) for group in scale_groups])
        self._group_coms = np.concatenate([bodies[group[0]].com for group in scale_groups])
        self._group_inertias = np.concatenate([bodies[group[0]].inertia for group in scale_groups])
        self._group_scales = np.ones(num_groups * 3)

        self._q = np.zeros(self._num_dofs)
        self._dq = np.zeros(self._num_dofs)
        self._ddq = np.zeros(self._num_dofs)

    ##########################################################################################
    # State
    ##########################################################################################

    def num_dofs(self) -> int:
        return self._num_dofs

    def num_bodies(self) -> int:
        return len(self.bodies)

    def num_scale_groups(self) -> int:
        return len(self.scale_groups)

    def group_scale_dim(self) -> int:
        return len(self.scale_groups) * 3

    def num_root_dofs(self) -> int:
        return 3 if self.root_rotates else 2

    def root_residual_halves(self) -> Tuple[List[int], List[int]]:
        if self.root_rotates:
            return [2], [0, 1]
        return [], [0, 1]

    def gravity(self) -> np.ndarray:
        return self._gravity.copy()

    def get_positions(self) -> np.ndarray:
        return self._q.copy()

    def set_positions(self, q: np.ndarray):
        self._q = np.array(q, dtype=np.float64)

    def get_velocities(self) -> np.ndarray:
        return self._dq.copy()

    def set_velocities(self, dq: np.ndarray):
        self._dq = np.array(dq, dtype=np.float64)

    def get_accelerations(self) -> np.ndarray:
        return self._ddq.copy()

    def set_accelerations(self, ddq: np.ndarray):
        self._ddq = np.array(ddq, dtype=np.float64)

    def get_group_masses(self) -> np.ndarray:
        return self._group_masses.copy()

    def set_group_masses(self, masses: np.ndarray):
        self._group_masses = np.array(masses, dtype=np.float64)

    def get_group_coms(self) -> np.ndarray:
        return self._group_coms.copy()

    def set_group_coms(self, coms: np.ndarray):
        self._group_coms = np.array(coms, dtype=np.float64)

    def get_group_inertias(self) -> np.ndarray:
        return self._group_inertias.copy()

    def set_group_inertias(self, inertias: np.ndarray):
        self._group_inertias = np.array(inertias, dtype=np.float64)

    def get_group_scales(self) -> np.ndarray:
        return self._group_scales.copy()

    def set_group_scales(self, scales: np.ndarray):
        self._group_scales = np.array(scales, dtype=np.float64)

    def get_link_masses(self) -> np.ndarray:
        return np.array([self._group_masses[self._group_of_body[k]] for k in range(len(self.bodies))])

    def set_link_masses(self, masses: np.ndarray):
        for g, group in enumerate(self.scale_groups):
            self._group_masses[g] = np.mean([masses[k] for k in group])

    def get_wrt_bounds(self, wrt: WithRespectTo) -> Tuple[np.ndarray, np.ndarray]:
        dim = self.wrt_dim(wrt)
        if wrt in (WithRespectTo.POSITION, WithRespectTo.VELOCITY, WithRespectTo.ACCELERATION):
            lower, upper = -np.inf, np.inf
        elif wrt == WithRespectTo.GROUP_MASSES:
            lower, upper = DEFAULT_MASS_BOUNDS
        elif wrt == WithRespectTo.GROUP_COMS:
            lower, upper = DEFAULT_COM_BOUNDS
        elif wrt == WithRespectTo.GROUP_INERTIAS:
            lower, upper = DEFAULT_INERTIA_BOUNDS
        else:
            lower, upper = DEFAULT_SCALE_BOUNDS
        return np.full(dim, lower), np.full(dim, upper)

    ##########################################################################################
    # Kinematics
    ##########################################################################################

    def _body_scale(self, body: int) -> np.ndarray:
        g = self._group_of_body[body]
        return self._group_scales[g * 3:g * 3 + 3]

    def _body_com_offset(self, body: int) -> np.ndarray:
        g = self._group_of_body[body]
        return self._group_coms[g * 3:g * 3 + 3]

    def _forward(self) -> Tuple[np.ndarray, np.ndarray]:
        origins = np.zeros((len(self.bodies), 3))
        angles = np.zeros(len(self.bodies))
        for k, body in enumerate(self.bodies):
            if body.parent < 0:
                origins[k] = np.array([self._q[0], self._q[1], 0.0])
                angles[k] = self._q[2] if self.root_rotates else 0.0
            else:
                p = body.parent
                origins[k] = origins[p] + _rotation(angles[p]) @ (self._body_scale(p) * body.joint_offset)
                angles[k] = angles[p] + self._q[self._rotational_dof[k]]
        return origins, angles

    def _point(self, body: int, local: np.ndarray, origins: np.ndarray, angles: np.ndarray) -> np.ndarray:
        return origins[body] + _rotation(angles[body]) @ (self._body_scale(body) * local)

    def _com_point(self, body: int, origins: np.ndarray, angles: np.ndarray) -> np.ndarray:
        return self._point(body, self._body_com_offset(body), origins, angles)

    def _point_jacobian(self, body: int, point: np.ndarray, origins: np.ndarray) -> np.ndarray:
        """
        The linear velocity Jacobian of a world point rigidly attached to `body`.
        """
        J = np.zeros((3, self._num_dofs))
        J[0, 0] = 1.0
        J[1, 1] = 1.0
        for j in self._paths[body]:
            dof = self._rotational_dof[j]
            if dof is not None:
                J[0, dof] = -(point[1] - origins[j][1])
                J[1, dof] = point[0] - origins[j][0]
        return J

    def _angular_row(self, body: int) -> np.ndarray:
        w = np.zeros(self._num_dofs)
        for j in self._paths[body]:
            dof = self._rotational_dof[j]
            if dof is not None:
                w[dof] = 1.0
        return w

    def _chain(self, body: int, point: np.ndarray, origins: np.ndarray) -> List[Tuple[float, List[int], np.ndarray]]:
        """
        Walks from the root to `point`, returning (angular velocity, rotational DOFs so far, segment vector) for each
        rigid segment along the way.
        """
        chain = []
        path = self._paths[body]
        omega = 0.0
        dofs: List[int] = []
        for idx, j in enumerate(path):
            dof = self._rotational_dof[j]
            if dof is not None:
                omega += self._dq[dof]
                dofs = dofs + [dof]
            end = origins[path[idx + 1]] if idx + 1 < len(path) else point
            chain.append((omega, dofs, _planar(end - origins[j])))
        return chain

    def _point_bias(self, body: int, point: np.ndarray, origins: np.ndarray) -> np.ndarray:
        """
        The velocity-product part of the point's acceleration (the acceleration it would have if ddq was zero).
        """
        bias = np.zeros(3)
        for omega, _, segment in self._chain(body, point, origins):
            bias -= omega * omega * segment
        return bias

    def _point_bias_jacobian_wrt_velocity(self, body: int, point: np.ndarray, origins: np.ndarray) -> np.ndarray:
        J = np.zeros((3, self._num_dofs))
        for omega, dofs, segment in self._chain(body, point, origins):
            for dof in dofs:
                J[:, dof] -= 2.0 * omega * segment
        return J

    def marker_world_positions(self, markers: List[Marker]) -> np.ndarray:
        origins, angles = self._forward()
        out = np.zeros(len(markers) * 3)
        for i, (body, offset) in enumerate(markers):
            out[i * 3:i * 3 + 3] = self._point(body, offset, origins, angles)
        return out

    def joint_world_positions(self, joints: List[int]) -> np.ndarray:
        origins, _ = self._forward()
        out = np.zeros(len(joints) * 3)
        for i, body in enumerate(joints):
            out[i * 3:i * 3 + 3] = origins[body]
        return out

    def body_world_positions(self) -> np.ndarray:
        origins, _ = self._forward()
        return origins

    def body_com_world_positions(self) -> np.ndarray:
        origins, angles = self._forward()
        return np.array([self._com_point(k, origins, angles) for k in range(len(self.bodies))])

    def child_bodies(self, body: int) -> List[int]:
        return [k for k, b in enumerate(self.bodies) if b.parent == body]

    def body_index(self, name: str) -> int:
        for k, body in enumerate(self.bodies):
            if body.name == name:
                return k
        raise KeyError(f'No body named {name}')

    def body_name(self, body: int) -> str:
        return self.bodies[body].name

    ##########################################################################################
    # Dynamics
    ##########################################################################################

    def _body_terms(self):
        origins, angles = self._forward()
        for k in range(len(self.bodies)):
            g = self._group_of_body[k]
            com = self._com_point(k, origins, angles)
            yield k, g, com, origins

    def mass_matrix(self) -> np.ndarray:
        M = np.zeros((self._num_dofs, self._num_dofs))
        for k, g, com, origins in self._body_terms():
            J = self._point_jacobian(k, com, origins)
            w = self._angular_row(k)
            M += self._group_masses[g] * (J.T @ J) + self._group_inertias[g * 6 + 2] * np.outer(w, w)
        return M

    def coriolis_and_gravity_forces(self) -> np.ndarray:
        C = np.zeros(self._num_dofs)
        for k, g, com, origins in self._body_terms():
            J = self._point_jacobian(k, com, origins)
            C += self._group_masses[g] * (J.T @ (self._point_bias(k, com, origins) - self._gravity))
        return C

    def wrench_to_generalized_forces(self, body: int, wrench: np.ndarray) -> np.ndarray:
        origins, _ = self._forward()
        moment = wrench[0:3]
        force = wrench[3:6]
        tau = np.zeros(self._num_dofs)
        tau[0] = force[0]
        tau[1] = force[1]
        for j in self._paths[body]:
            dof = self._rotational_dof[j]
            if dof is not None:
                tau[dof] = moment[2] - (origins[j][0] * force[1] - origins[j][1] * force[0])
        return tau

    def jacobian_of_m(self, ddq: np.ndarray, wrt: WithRespectTo) -> np.ndarray:
        if wrt == WithRespectTo.GROUP_MASSES:
            J_out = np.zeros((self._num_dofs, self.num_scale_groups()))
            for k, g, com, origins in self._body_terms():
                J = self._point_jacobian(k, com, origins)
                J_out[:, g] += J.T @ (J @ ddq)
            return J_out
        if wrt == WithRespectTo.GROUP_INERTIAS:
            J_out = np.zeros((self._num_dofs, self.num_scale_groups() * 6))
            for k, g, _, _ in self._body_terms():
                w = self._angular_row(k)
                J_out[:, g * 6 + 2] += w * (w @ ddq)
            return J_out
        return super().jacobian_of_m(ddq, wrt)

    def jacobian_of_c(self, wrt: WithRespectTo) -> np.ndarray:
        if wrt == WithRespectTo.VELOCITY:
            J_out = np.zeros((self._num_dofs, self._num_dofs))
            for k, g, com, origins in self._body_terms():
                J = self._point_jacobian(k, com, origins)
                J_out += self._group_masses[g] * (J.T @ self._point_bias_jacobian_wrt_velocity(k, com, origins))
            return J_out
        if wrt == WithRespectTo.GROUP_MASSES:
            J_out = np.zeros((self._num_dofs, self.num_scale_groups()))
            for k, g, com, origins in self._body_terms():
                J = self._point_jacobian(k, com, origins)
                J_out[:, g] += J.T @ (self._point_bias(k, com, origins) - self._gravity)
            return J_out
        if wrt == WithRespectTo.GROUP_INERTIAS:
            return np.zeros((self._num_dofs, self.num_scale_groups() * 6))
        return super().jacobian_of_c(wrt)

    def marker_world_positions_jacobian_wrt(self, markers: List[Marker], wrt: WithRespectTo) -> np.ndarray:
        if wrt != WithRespectTo.POSITION:
            return super().marker_world_positions_jacobian_wrt(markers, wrt)
        origins, angles = self._forward()
        J = np.zeros((len(markers) * 3, self._num_dofs))
        for i, (body, offset) in enumerate(markers):
            point = self._point(body, offset, origins, angles)
            J[i * 3:i * 3 + 3, :] = self._point_jacobian(body, point, origins)
        return J

    def marker_world_positions_jacobian_wrt_marker_offsets(self, markers: List[Marker]) -> np.ndarray:
        _, angles = self._forward()
        J = np.zeros((len(markers) * 3, len(markers) * 3))
        for i, (body, _) in enumerate(markers):
            J[i * 3:i * 3 + 3, i * 3:i * 3 + 3] = _rotation(angles[body]) @ np.diag(self._body_scale(body))
        return J

    def joint_world_positions_jacobian_wrt(self, joints: List[int], wrt: WithRespectTo) -> np.ndarray:
        if wrt != WithRespectTo.POSITION:
            return super().joint_world_positions_jacobian_wrt(joints, wrt)
        origins, _ = self._forward()
        J = np.zeros((len(joints) * 3, self._num_dofs))
        for i, body in enumerate(joints):
            J[i * 3:i * 3 + 3, :] = self._point_jacobian(body, origins[body], origins)
        return J


def create_point_mass_skeleton(mass: float = 1.0) -> PlanarSkeleton:
    """
    A single body translating in x and y, with 2 DOFs.
    """
    return PlanarSkeleton([PlanarBody('pelvis', mass=mass)], root_rotates=False)


def create_two_link_leg_skeleton(pelvis_mass: float = 10.0, thigh_mass: float = 4.0, shank_mass: float = 2.0) \
        -> PlanarSkeleton:
    """
    A floating, rotating pelvis with a hip and a knee, with 5 DOFs. Handy for exercising every code path.
    """
    return PlanarSkeleton([
        PlanarBody('pelvis', mass=pelvis_mass, com=np.array([0.02, 0.05, 0.0]),
                   inertia=np.array([0.1, 0.1, 0.12, 0.0, 0.0, 0.0])),
        PlanarBody('thigh', parent=0, joint_offset=np.array([0.0, -0.1, 0.0]), mass=thigh_mass,
                   com=np.array([0.01, -0.2, 0.0]), inertia=np.array([0.05, 0.05, 0.07, 0.0, 0.0, 0.0])),
        PlanarBody('shank', parent=1, joint_offset=np.array([0.0, -0.4, 0.0]), mass=shank_mass,
                   com=np.array([0.0, -0.2, 0.0]), inertia=np.array([0.03, 0.03, 0.04, 0.0, 0.0, 0.0])),
    ], root_rotates=True)
