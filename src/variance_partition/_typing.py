"""Shared type aliases for the variance_partition package."""

from collections.abc import Callable
from typing import Any

import numpy as np
import pandas as pd

# Array-like inputs accepted by the public API.
ArrayLike = np.ndarray | pd.DataFrame | pd.Series

# Per-row transform applied to each validated fit.
FitTransform = Callable[[Any], Any]
