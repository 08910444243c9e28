import nimblephysics as nimble
import numpy as np
from typing import List, Tuple
from rigid_body.model import RigidBodyModel, WithRespectTo, Marker


class NimbleSkeleton(RigidBodyModel):
    """
    Wraps a nimblephysics Skeleton (for example, one loaded from an OpenSim model) behind the RigidBodyModel
    interface. Derivatives fall back to the base class finite differences.
    """
    def __init__(self, skel: nimble.dynamics.Skeleton):
        self.skel = skel

    def num_dofs(self) -> int:
        return self.skel.getNumDofs()

    def num_bodies(self) -> int:
        return self.skel.getNumBodyNodes()

    def num_scale_groups(self) -> int:
        return self.skel.getNumScaleGroups()

    def group_scale_dim(self) -> int:
        return self.skel.getGroupScaleDim()

    def gravity(self) -> np.ndarray:
        return np.array(self.skel.getGravity())

    def get_positions(self) -> np.ndarray:
        return np.array(self.skel.getPositions())

    def set_positions(self, q: np.ndarray):
        self.skel.setPositions(q)

    def get_velocities(self) -> np.ndarray:
        return np.array(self.skel.getVelocities())

    def set_velocities(self, dq: np.ndarray):
        self.skel.setVelocities(dq)

    def get_accelerations(self) -> np.ndarray:
        return np.array(self.skel.getAccelerations())

    def set_accelerations(self, ddq: np.ndarray):
        self.skel.setAccelerations(ddq)

    def get_group_masses(self) -> np.ndarray:
        return np.array(self.skel.getGroupMasses())

    def set_group_masses(self, masses: np.ndarray):
        self.skel.setGroupMasses(masses)

    def get_group_coms(self) -> np.ndarray:
        return np.array(self.skel.getGroupCOMs())

    def set_group_coms(self, coms: np.ndarray):
        self.skel.setGroupCOMs(coms)

    def get_group_inertias(self) -> np.ndarray:
        return np.array(self.skel.getGroupInertias())

    def set_group_inertias(self, inertias: np.ndarray):
        self.skel.setGroupInertias(inertias)

    def get_group_scales(self) -> np.ndarray:
        return np.array(self.skel.getGroupScales())

    def set_group_scales(self, scales: np.ndarray):
        self.skel.setGroupScales(scales)

    def get_link_masses(self) -> np.ndarray:
        return np.array(self.skel.getLinkMasses())

    def set_link_masses(self, masses: np.ndarray):
        self.skel.setLinkMasses(masses)

    def get_wrt_bounds(self, wrt: WithRespectTo) -> Tuple[np.ndarray, np.ndarray]:
        if wrt == WithRespectTo.POSITION:
            return np.array(self.skel.getPositionLowerLimits()), np.array(self.skel.getPositionUpperLimits())
        elif wrt == WithRespectTo.VELOCITY:
            return np.array(self.skel.getVelocityLowerLimits()), np.array(self.skel.getVelocityUpperLimits())
        elif wrt == WithRespectTo.ACCELERATION:
            return np.array(self.skel.getAccelerationLowerLimits()), \
                np.array(self.skel.getAccelerationUpperLimits())
        elif wrt == WithRespectTo.GROUP_MASSES:
            return np.array(self.skel.getGroupMassesLowerBound()), np.array(self.skel.getGroupMassesUpperBound())
        elif wrt == WithRespectTo.GROUP_COMS:
            return np.array(self.skel.getGroupCOMLowerBound()), np.array(self.skel.getGroupCOMUpperBound())
        elif wrt == WithRespectTo.GROUP_INERTIAS:
            return np.array(self.skel.getGroupInertiasLowerBound()), \
                np.array(self.skel.getGroupInertiasUpperBound())
        return np.array(self.skel.getGroupScalesLowerBound()), np.array(self.skel.getGroupScalesUpperBound())

    def mass_matrix(self) -> np.ndarray:
        return np.array(self.skel.getMassMatrix())

    def coriolis_and_gravity_forces(self) -> np.ndarray:
        return np.array(self.skel.getCoriolisAndGravityForces())

    def wrench_to_generalized_forces(self, body: int, wrench: np.ndarray) -> np.ndarray:
        body_node = self.skel.getBodyNode(body)
        force = np.asarray(wrench[3:6], dtype=np.float64)
        origin = np.array(body_node.getWorldTransform().translation())
        # Apply the force at the body origin, so the moment has to be shifted from the world origin to there
        self.skel.clearExternalForces()
        body_node.addExtForce(force, np.zeros(3), False, True)
        body_node.addExtTorque(np.asarray(wrench[0:3], dtype=np.float64) - np.cross(origin, force), False)
        tau = np.array(self.skel.getExternalForces())
        self.skel.clearExternalForces()
        return tau

    def _nimble_markers(self, markers: List[Marker]):
        return [(self.skel.getBodyNode(body), np.asarray(offset, dtype=np.float64)) for body, offset in markers]

    def marker_world_positions(self, markers: List[Marker]) -> np.ndarray:
        return np.array(self.skel.getMarkerWorldPositions(self._nimble_markers(markers)))

    def joint_world_positions(self, joints: List[int]) -> np.ndarray:
        return np.array(self.skel.getJointWorldPositions(
            [self.skel.getBodyNode(body).getParentJoint() for body in joints]))

    def body_world_positions(self) -> np.ndarray:
        return np.array([self.skel.getBodyNode(i).getWorldTransform().translation()
                         for i in range(self.skel.getNumBodyNodes())])

    def body_com_world_positions(self) -> np.ndarray:
        return np.array([self.skel.getBodyNode(i).getCOM() for i in range(self.skel.getNumBodyNodes())])

    def child_bodies(self, body: int) -> List[int]:
        body_node = self.skel.getBodyNode(body)
        return [body_node.getChildBodyNode(i).getIndexInSkeleton() for i in range(body_node.getNumChildBodyNodes())]

    def body_index(self, name: str) -> int:
        body_node = self.skel.getBodyNode(name)
        if body_node is None:
            raise KeyError(f'No body named {name}')
        return body_node.getIndexInSkeleton()

    def body_name(self, body: int) -> str:
        return self.skel.getBodyNode(body).getName()
