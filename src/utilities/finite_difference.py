import numpy as np
from typing import Callable, Optional, Union

# Ridders' extrapolation table parameters
RIDDERS_STEP_SHRINK = 1.4
RIDDERS_TABLE_SIZE = 10
RIDDERS_SAFE = 2.0

PerturbedFn = Callable[[float, int], Union[float, np.ndarray]]


def _max_abs(value) -> float:
    return float(np.max(np.abs(value))) if np.size(value) > 0 else 0.0


def central_difference(perturbed: PerturbedFn, index: int, eps: float) -> np.ndarray:
    plus = np.asarray(perturbed(eps, index), dtype=np.float64)
    minus = np.asarray(perturbed(-eps, index), dtype=np.float64)
    return (plus - minus) / (2.0 * eps)


def ridders_difference(perturbed: PerturbedFn, index: int, eps: float) -> np.ndarray:
    """
    Polynomial-extrapolated central difference along one input, shrinking the step until the error estimate stops
    improving. `perturbed(eps, index)` must return the function value with input `index` nudged by `eps`.
    """
    step = eps
    con2 = RIDDERS_STEP_SHRINK * RIDDERS_STEP_SHRINK
    table = [[None] * RIDDERS_TABLE_SIZE for _ in range(RIDDERS_TABLE_SIZE)]
    table[0][0] = central_difference(perturbed, index, step)
    best = table[0][0]
    best_error = np.inf

    for i in range(1, RIDDERS_TABLE_SIZE):
        step /= RIDDERS_STEP_SHRINK
        table[0][i] = central_difference(perturbed, index, step)
        factor = con2
        for j in range(1, i + 1):
            table[j][i] = (table[j - 1][i] * factor - table[j - 1][i - 1]) / (factor - 1.0)
            factor *= con2
            error = max(_max_abs(table[j][i] - table[j - 1][i]), _max_abs(table[j][i] - table[j - 1][i - 1]))
            if error <= best_error:
                best_error = error
                best = table[j][i]
        # Higher order is making the error worse, so bail out early
        if _max_abs(table[i][i] - table[i - 1][i - 1]) >= RIDDERS_SAFE * best_error:
            break
    return best


def finite_difference(perturbed: PerturbedFn,
                      dim: int,
                      eps: float,
                      use_ridders: bool = True,
                      out_dim: Optional[int] = None) -> np.ndarray:
    """
    Differentiates a scalar or vector valued function with respect to `dim` inputs. Scalar functions produce a
    gradient of shape (dim,), vector functions produce a Jacobian of shape (out_dim, dim).
    """
    if dim == 0:
        return np.zeros(0) if out_dim is None else np.zeros((out_dim, 0))
    columns = []
    for i in range(dim):
        if use_ridders:
            columns.append(ridders_difference(perturbed, i, eps))
        else:
            columns.append(central_difference(perturbed, i, eps))
    return np.stack(columns, axis=-1)
