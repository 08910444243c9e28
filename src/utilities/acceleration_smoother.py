import numpy as np
import scipy.sparse
import scipy.sparse.linalg
from exceptions import TrialPreprocessingError

# Discrete third derivative stencil
JERK_STAMP = np.array([-1.0, 3.0, -3.0, 1.0])


class AccelerationSmoother:
    """
    Removes "jerk" (the time derivative of acceleration) from a time series by solving a sparse least squares problem:

        min_x  |smoothing_weight * D3 x|^2 + |regularization_weight * (x - series)|^2

    The normal equations are factored once and reused for every row of every series passed to smooth().
    """
    def __init__(self, timesteps: int, smoothing_weight: float, regularization_weight: float = 1.0):
        self.timesteps = timesteps
        self.smoothing_weight = smoothing_weight
        self.regularization_weight = regularization_weight
        self.smoothed_timesteps = max(0, timesteps - 3)

        rows = []
        cols = []
        values = []
        for i in range(self.smoothed_timesteps):
            for j in range(4):
                rows.append(i)
                cols.append(i + j)
                values.append(JERK_STAMP[j] * smoothing_weight)
        for i in range(timesteps):
            rows.append(self.smoothed_timesteps + i)
            cols.append(i)
            values.append(regularization_weight)
        self.B = scipy.sparse.csr_matrix((values, (rows, cols)),
                                         shape=(self.smoothed_timesteps + timesteps, timesteps))
        self._solve = scipy.sparse.linalg.factorized((self.B.T @ self.B).tocsc())

    def smooth(self, series: np.ndarray) -> np.ndarray:
        if series.ndim != 2 or series.shape[1] != self.timesteps:
            raise TrialPreprocessingError(f'The smoother was built for {self.timesteps} timesteps, but was given a '
                                          f'series of shape {series.shape}.')
        smoothed = np.zeros(series.shape)
        for row in range(series.shape[0]):
            # A constant row is probably a locked joint, leave it alone
            if np.max(series[row, :]) == np.min(series[row, :]):
                smoothed[row, :] = series[row, :]
                continue
            c = np.zeros(self.smoothed_timesteps + self.timesteps)
            c[self.smoothed_timesteps:] = self.regularization_weight * series[row, :]
            smoothed[row, :] = self._solve(self.B.T @ c)
        return smoothed

    def get_loss(self, series: np.ndarray, original_series: np.ndarray) -> float:
        loss = 0.0
        for row in range(series.shape[0]):
            residual = self.B @ series[row, :]
            residual[self.smoothed_timesteps:] -= self.regularization_weight * original_series[row, :]
            loss += float(residual @ residual)
        return loss
