import numpy as np
from typing import List
from rigid_body.model import RigidBodyModel, WithRespectTo
from utilities.finite_difference import finite_difference

RESIDUAL_JACOBIAN_EPS = 1e-3
RESIDUAL_NORM_GRADIENT_EPS = 5e-4


class ResidualForceHelper:
    """
    Computes the "residual" forces on the unactuated root DOFs: whatever generalized force is left over on the
    floating base after the measured ground reaction wrenches are accounted for. A perfectly consistent model and
    dataset would have zero residual.

    `forces_concat` is the concatenation of a 6-vector (moment, force) world wrench, expressed about the world
    origin, for each of `force_bodies` in order.
    """
    def __init__(self, model: RigidBodyModel, force_bodies: List[int]):
        self.model = model
        self.force_bodies = force_bodies

    def _external_forces(self, forces_concat: np.ndarray) -> np.ndarray:
        tau = np.zeros(self.model.num_dofs())
        for i, body in enumerate(self.force_bodies):
            tau += self.model.wrench_to_generalized_forces(body, forces_concat[i * 6:i * 6 + 6])
        return tau

    def calculate_residual(self, q: np.ndarray, dq: np.ndarray, ddq: np.ndarray, forces_concat: np.ndarray) \
            -> np.ndarray:
        with self.model.evaluate_at(q, dq, ddq):
            tau = self.model.mass_matrix() @ ddq + self.model.coriolis_and_gravity_forces() \
                - self._external_forces(forces_concat)
        return tau[:self.model.num_root_dofs()]

    def calculate_residual_norm(self,
                                q: np.ndarray,
                                dq: np.ndarray,
                                ddq: np.ndarray,
                                forces_concat: np.ndarray,
                                use_l1: bool = False) -> float:
        residual = self.calculate_residual(q, dq, ddq, forces_concat)
        if use_l1:
            torque_half, force_half = self.model.root_residual_halves()
            return float(np.linalg.norm(residual[torque_half]) + np.linalg.norm(residual[force_half]))
        return float(residual @ residual)

    def calculate_residual_jacobian_wrt(self,
                                        q: np.ndarray,
                                        dq: np.ndarray,
                                        ddq: np.ndarray,
                                        forces_concat: np.ndarray,
                                        wrt: WithRespectTo) -> np.ndarray:
        with self.model.evaluate_at(q, dq, ddq):
            if wrt in (WithRespectTo.POSITION, WithRespectTo.GROUP_SCALES):
                jac = self.model.jacobian_of_m(ddq, wrt) + self.model.jacobian_of_c(wrt)
                for i, body in enumerate(self.force_bodies):
                    jac -= self.model.jacobian_of_wrench_forces(body, forces_concat[i * 6:i * 6 + 6], wrt)
            elif wrt in (WithRespectTo.GROUP_MASSES, WithRespectTo.GROUP_COMS, WithRespectTo.GROUP_INERTIAS):
                jac = self.model.jacobian_of_m(ddq, wrt) + self.model.jacobian_of_c(wrt)
            elif wrt == WithRespectTo.VELOCITY:
                jac = self.model.jacobian_of_c(wrt)
            elif wrt == WithRespectTo.ACCELERATION:
                jac = self.model.mass_matrix()
            else:
                return self.finite_difference_residual_jacobian_wrt(q, dq, ddq, forces_concat, wrt)
        return jac[:self.model.num_root_dofs(), :]

    def finite_difference_residual_jacobian_wrt(self,
                                                q: np.ndarray,
                                                dq: np.ndarray,
                                                ddq: np.ndarray,
                                                forces_concat: np.ndarray,
                                                wrt: WithRespectTo) -> np.ndarray:
        with self.model.evaluate_at(q, dq, ddq):
            original = self.model.get_wrt(wrt).copy()

            def perturbed(eps: float, index: int):
                tweaked = original.copy()
                tweaked[index] += eps
                self.model.set_wrt(wrt, tweaked)
                return self.calculate_residual(self.model.get_positions(),
                                               self.model.get_velocities(),
                                               self.model.get_accelerations(),
                                               forces_concat)

            try:
                return finite_difference(perturbed, len(original), RESIDUAL_JACOBIAN_EPS,
                                         out_dim=self.model.num_root_dofs())
            finally:
                self.model.set_wrt(wrt, original)

    def _norm_gradient_weights(self, residual: np.ndarray, use_l1: bool) -> np.ndarray:
        if not use_l1:
            return 2 * residual
        weights = np.zeros(len(residual))
        for half in self.model.root_residual_halves():
            norm = np.linalg.norm(residual[half])
            if norm > 0:
                weights[half] = residual[half] / norm
        return weights

    def calculate_residual_norm_gradient_wrt(self,
                                             q: np.ndarray,
                                             dq: np.ndarray,
                                             ddq: np.ndarray,
                                             forces_concat: np.ndarray,
                                             wrt: WithRespectTo,
                                             use_l1: bool = False) -> np.ndarray:
        residual = self.calculate_residual(q, dq, ddq, forces_concat)
        jac = self.calculate_residual_jacobian_wrt(q, dq, ddq, forces_concat, wrt)
        return jac.T @ self._norm_gradient_weights(residual, use_l1)

    def finite_difference_residual_norm_gradient_wrt(self,
                                                     q: np.ndarray,
                                                     dq: np.ndarray,
                                                     ddq: np.ndarray,
                                                     forces_concat: np.ndarray,
                                                     wrt: WithRespectTo,
                                                     use_l1: bool = False) -> np.ndarray:
        with self.model.evaluate_at(q, dq, ddq):
            original = self.model.get_wrt(wrt).copy()

            def perturbed(eps: float, index: int):
                tweaked = original.copy()
                tweaked[index] += eps
                self.model.set_wrt(wrt, tweaked)
                return self.calculate_residual_norm(self.model.get_positions(),
                                                    self.model.get_velocities(),
                                                    self.model.get_accelerations(),
                                                    forces_concat,
                                                    use_l1)

            try:
                return finite_difference(perturbed, len(original), RESIDUAL_NORM_GRADIENT_EPS)
            finally:
                self.model.set_wrt(wrt, original)
