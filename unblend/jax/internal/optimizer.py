# Copyright 2024 The unblend Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Bound-constrained quasi-Newton minimization of a smooth objective."""

from typing import Callable, Tuple

import numpy as np
from scipy import optimize

ObjectiveFunction = Callable[[np.ndarray], Tuple[float, np.ndarray]]


def minimize_bounded(fun_and_grad: ObjectiveFunction,
                     x0: np.ndarray,
                     lower: np.ndarray,
                     upper: np.ndarray,
                     gradient_tolerance: float,
                     max_iterations: int) -> np.ndarray:
  """Minimizes an objective inside a box with L-BFGS-B.

  The result is the best point found within the iteration budget; failing to
  reach the tolerance is not an error.

  Args:
    fun_and_grad: maps a float64 point to a (value, gradient) pair.
    x0: the [n] starting point. It is clipped into the bounds.
    lower: [n] lower bounds.
    upper: [n] upper bounds. Dimensions with lower == upper are fixed.
    gradient_tolerance: stop when the projected gradient norm falls below this.
    max_iterations: maximum number of quasi-Newton iterations.

  Returns:
    a [n] float64 array inside the bounds.
  """
  lower = np.asarray(lower, dtype=np.float64)
  upper = np.asarray(upper, dtype=np.float64)
  x0 = np.clip(np.asarray(x0, dtype=np.float64), lower, upper)

  def objective(x):
    value, gradient = fun_and_grad(x)
    return float(value), np.asarray(gradient, dtype=np.float64)

  result = optimize.minimize(
      objective,
      x0,
      jac=True,
      method='L-BFGS-B',
      bounds=optimize.Bounds(lower, upper),
      options={
          'maxiter': max_iterations,
          'gtol': gradient_tolerance,
      })
  return np.clip(result.x, lower, upper)
