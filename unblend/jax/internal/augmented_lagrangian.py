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

"""Augmented-Lagrangian solver for the per-pixel unmixing problem.

Solves  min E(x)  s.t.  g(x) = 0,  lower <= x <= upper  for the unknowns x of
a single pixel, where E is the unmixing energy and g the compositing
constraints of `energy.py`. Each outer step minimizes the augmented Lagrangian

  L(x) = E(x) - lambda^T g(x) + (rho / 2) |g(x)|^2

inside the bounds with L-BFGS-B, then updates the multipliers lambda and, when
the constraint residual did not shrink enough, the penalty weight rho.
"""

import dataclasses
import functools
from typing import Callable, Optional, Sequence

from absl import logging
from flax import struct
from unblend.jax import constants
from unblend.jax import layers as layers_lib
from unblend.jax.internal import energy
from unblend.jax.internal import optimizer
import jax
import jax.numpy as jnp
import numpy as np


@dataclasses.dataclass(frozen=True)
class SolverConfig:
  """Hyperparameters of the augmented-Lagrangian iteration."""
  # Grow the penalty when |g_new| > penalty_decrease_ratio * |g_old| (gamma).
  penalty_decrease_ratio: float = constants.PENALTY_DECREASE_RATIO
  # Factor applied to the penalty when it grows (beta).
  penalty_growth_factor: float = constants.PENALTY_GROWTH_FACTOR
  initial_penalty: float = constants.INITIAL_PENALTY
  # Stop once both the step and the residual norms are below this (epsilon).
  tolerance: float = constants.CONVERGENCE_EPSILON
  inner_gradient_tolerance: float = constants.INNER_GRADIENT_TOLERANCE
  max_outer_iterations: int = constants.MAX_OUTER_ITERATIONS
  max_inner_iterations: int = constants.MAX_INNER_ITERATIONS


@struct.dataclass
class OptimizationState:
  """Snapshot of a per-pixel solve after an outer iteration."""
  # The [4 * num_layers] unknowns: alphas first, then colors.
  x: np.ndarray
  # Lagrange multipliers, one per constraint.
  multipliers: np.ndarray
  penalty: float
  # Number of completed outer iterations (inner solves).
  iteration: int
  # |g(x)|.
  constraint_norm: float

  @property
  def alphas(self):
    return self.x[:self.num_layers]

  @property
  def colors(self):
    return np.reshape(self.x[self.num_layers:], (self.num_layers, 3))

  @property
  def num_layers(self):
    return self.x.shape[0] // 4


class PixelProblem:
  """The compiled objective and constraints of one decomposition run.

  Built once per run and shared read-only by all pixel solves; the per-pixel
  data (target color, target alphas, multipliers, penalty) are arguments of
  the compiled functions.
  """

  def __init__(self,
               registry: layers_lib.LayerRegistry,
               refinement: bool = False,
               energy_options: energy.EnergyOptions = energy.EnergyOptions(),
               gray_layers: Sequence[int] = ()):
    """Initializes the problem.

    Args:
      registry: the LayerRegistry describing the layers.
      refinement: if True, the alphas are pinned to per-pixel target alphas
        instead of constraining the composited alpha to one.
      energy_options: regularizers of the unmixing energy.
      gray_layers: indices of layers constrained to gray colors.

    Raises:
      ValueError: if a gray layer index is out of range.
    """
    self.registry = registry
    self.refinement = refinement
    self.energy_options = energy_options
    self.gray_layers = tuple(gray_layers)
    for layer in self.gray_layers:
      if not 0 <= layer < registry.num_layers:
        raise ValueError(
            f'Gray layer index {layer} is out of range for '
            f'{registry.num_layers} layers.')

    self._constraints = jax.jit(self._constraint_vector)
    self._lagrangian = jax.jit(self._lagrangian_and_gradient)

  @property
  def num_layers(self) -> int:
    return self.registry.num_layers

  @property
  def num_constraints(self) -> int:
    return energy.num_constraints(self.num_layers, self.refinement,
                                  self.gray_layers)

  def _constraint_args(self, target_alphas):
    return dict(
        operators=self.registry.operators,
        modes=self.registry.modes,
        target_alphas=target_alphas if self.refinement else None,
        gray_layers=self.gray_layers)

  def _constraint_vector(self, x, target_color, target_alphas):
    return energy.constraint_vector(x, target_color,
                                    **self._constraint_args(target_alphas))

  def _lagrangian_and_gradient(self, x, target_color, target_alphas,
                               multipliers, penalty):
    args = self._constraint_args(target_alphas)
    g = energy.constraint_vector(x, target_color, **args)
    jacobian = energy.constraint_jacobian(x, target_color, **args)
    models = self.registry.color_models

    value = (
        energy.unmixing_energy(x, models, self.energy_options) -
        jnp.dot(multipliers, g) + 0.5 * penalty * jnp.dot(g, g))
    gradient = (
        energy.unmixing_energy_gradient(x, models, self.energy_options) +
        jnp.matmul(jnp.transpose(jacobian), penalty * g - multipliers))
    return value, gradient

  def _placeholder_alphas(self, target_alphas):
    if target_alphas is None:
      return np.zeros(self.num_layers)
    return np.asarray(target_alphas, dtype=np.float64)

  def constraints(self, x, target_color, target_alphas=None) -> np.ndarray:
    """Evaluates the [num_constraints] constraint vector g(x)."""
    return np.asarray(
        self._constraints(x, np.asarray(target_color, dtype=np.float64),
                          self._placeholder_alphas(target_alphas)))

  def lagrangian_and_gradient(self, x, target_color, target_alphas,
                              multipliers, penalty):
    """Evaluates the augmented Lagrangian and its [4 * num_layers] gradient."""
    return self._lagrangian(x, np.asarray(target_color, dtype=np.float64),
                            self._placeholder_alphas(target_alphas),
                            multipliers, penalty)


def initial_unknowns(problem: PixelProblem,
                     target_alphas: Optional[np.ndarray] = None,
                     initial_colors: Optional[np.ndarray] = None) -> np.ndarray:
  """Returns the starting point of a solve.

  Alphas start at 0.5 (or at `target_alphas`) and colors at the
  representative color of each layer's model (or at `initial_colors`).
  """
  num_layers = problem.num_layers
  if target_alphas is None:
    alphas = np.full(num_layers, constants.INITIAL_ALPHA)
  else:
    alphas = np.asarray(target_alphas, dtype=np.float64)
  if initial_colors is None:
    colors = np.stack([
        model.representative_color()
        for model in problem.registry.color_models
    ])
  else:
    colors = np.asarray(initial_colors, dtype=np.float64)
  return np.concatenate([np.ravel(alphas), np.ravel(colors)])


def solve_pixel(problem: PixelProblem,
                target_color,
                config: SolverConfig = SolverConfig(),
                opaque_background: bool = True,
                target_alphas=None,
                initial_colors=None,
                background_color=None,
                callback: Optional[Callable[[OptimizationState], None]] = None
               ) -> OptimizationState:
  """Decomposes the color of one pixel into layer colors and alphas.

  Convergence is best effort: after `config.max_outer_iterations` further
  outer steps the current point is returned even if the constraints are not
  met. Callers that care should check `constraint_norm` of the result.

  Args:
    problem: the PixelProblem of the current run.
    target_color: the (3,) color of the pixel.
    config: SolverConfig with the iteration hyperparameters.
    opaque_background: if True, the alpha of layer 0 is fixed to one.
    target_alphas: the [num_layers] alphas to pin the layers to. Required if
      and only if the problem is a refinement problem.
    initial_colors: optional [num_layers, 3] colors to start from.
    background_color: optional (3,) color that layer 0 is fixed to. Requires
      an opaque background.
    callback: optional function called with the state after each outer step.

  Returns:
    The final OptimizationState. Alphas and colors are within [0, 1].

  Raises:
    ValueError: if `target_alphas` does not match the problem mode, or if a
      background color is given without an opaque background.
  """
  if problem.refinement != (target_alphas is not None):
    raise ValueError(
        'target_alphas must be given exactly for refinement problems.')
  if background_color is not None and not opaque_background:
    raise ValueError('A fixed background color requires an opaque background.')

  num_layers = problem.num_layers
  target_color = np.asarray(target_color, dtype=np.float64)
  lower = np.zeros(4 * num_layers)
  upper = np.ones(4 * num_layers)
  x = initial_unknowns(problem, target_alphas, initial_colors)

  if opaque_background:
    lower[0] = 1.0
    x[0] = 1.0
  if background_color is not None:
    background_color = np.clip(
        np.asarray(background_color, dtype=np.float64), 0.0, 1.0)
    lower[num_layers:num_layers + 3] = background_color
    upper[num_layers:num_layers + 3] = background_color
    x[num_layers:num_layers + 3] = background_color
  x = np.clip(x, lower, upper)

  multipliers = np.zeros(problem.num_constraints)
  penalty = config.initial_penalty
  g = problem.constraints(x, target_color, target_alphas)
  state = OptimizationState(x, multipliers, penalty, 0,
                            float(np.linalg.norm(g)))

  for iteration in range(1, config.max_outer_iterations + 2):
    objective = functools.partial(
        problem.lagrangian_and_gradient,
        target_color=target_color,
        target_alphas=target_alphas,
        multipliers=multipliers,
        penalty=penalty)
    x_new = optimizer.minimize_bounded(objective, x, lower, upper,
                                       config.inner_gradient_tolerance,
                                       config.max_inner_iterations)
    g_new = problem.constraints(x_new, target_color, target_alphas)

    multipliers = multipliers - penalty * g_new
    if (np.linalg.norm(g_new) >
        config.penalty_decrease_ratio * np.linalg.norm(g)):
      penalty *= config.penalty_growth_factor

    unchanged = np.linalg.norm(x_new - x) < config.tolerance
    satisfied = np.linalg.norm(g_new) < config.tolerance
    x, g = x_new, g_new
    state = OptimizationState(x, multipliers, penalty, iteration,
                              float(np.linalg.norm(g)))
    if callback is not None:
      callback(state)
    if unchanged and satisfied:
      break

  if state.constraint_norm >= config.tolerance:
    logging.vlog(
        1, 'Constraints unsatisfied after %d iterations: |g| = %f for '
        'target %s (x = %s)', state.iteration, state.constraint_norm,
        target_color, state.x)
  return state
