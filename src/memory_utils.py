import numpy as np
from typing import List, Dict, Optional, Iterable


def copy_marker_observations(original_observations: List[Dict[str, np.ndarray]],
                             keep_markers: Optional[Iterable[str]] = None) -> List[Dict[str, np.ndarray]]:
    """
    Deep copies a trial's per-frame marker observations, optionally dropping any marker that isn't in
    `keep_markers` (for example, markers the skeleton has no attachment for).
    """
    keep = None if keep_markers is None else set(keep_markers)
    copied: List[Dict[str, np.ndarray]] = []
    for frame in original_observations:
        copied.append({name: np.array(position, dtype=np.float64) for name, position in frame.items()
                       if keep is None or name in keep})
    return copied


def copy_matrix_trials(original_trials: List[np.ndarray]) -> List[np.ndarray]:
    return [np.array(trial, dtype=np.float64) for trial in original_trials]
