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

"""Per-pixel unmixing energy and compositing constraints.

The unknowns of one pixel are packed into a single vector x of length
4 * num_layers: first the num_layers alphas, then the num_layers RGB colors.
"""

import dataclasses
import math
from typing import Optional, Sequence, Tuple

from unblend.jax import color_model as cm
from unblend.jax import composite
from unblend.jax import constants
from unblend.jax.constants import BlendMode
from unblend.jax.internal import composite_jacobians
import jax.numpy as jnp

_SQRT_3 = math.sqrt(3.0)


@dataclasses.dataclass(frozen=True)
class EnergyOptions:
  """Optional regularizers of the unmixing energy."""
  # Adds sparsity_weight * (sum(alpha) / |alpha|^2 - 1).
  use_sparsity: bool = False
  sparsity_weight: float = constants.SPARSITY_WEIGHT
  # Adds minimum_alpha_weight * sum(alpha).
  use_minimum_alpha: bool = False
  minimum_alpha_weight: float = constants.MINIMUM_ALPHA_WEIGHT


def split_unknowns(x: jnp.ndarray,
                   num_layers: int) -> Tuple[jnp.ndarray, jnp.ndarray]:
  """Splits x into [num_layers] alphas and [num_layers, 3] colors."""
  return x[:num_layers], jnp.reshape(x[num_layers:], (num_layers, 3))


def join_unknowns(alphas: jnp.ndarray, colors: jnp.ndarray) -> jnp.ndarray:
  return jnp.concatenate([jnp.ravel(alphas), jnp.ravel(colors)])


def unknowns_to_layers(x: jnp.ndarray, num_layers: int) -> jnp.ndarray:
  """Rearranges x into a [num_layers, 4] array of RGBA values."""
  alphas, colors = split_unknowns(x, num_layers)
  return jnp.concatenate([colors, alphas[:, jnp.newaxis]], axis=-1)


def num_constraints(num_layers: int, refinement: bool,
                    gray_layers: Sequence[int] = ()) -> int:
  return 3 + (num_layers if refinement else 1) + 3 * len(gray_layers)


def constraint_vector(x: jnp.ndarray,
                      target_color: jnp.ndarray,
                      operators: Sequence[composite.CompositeOperator],
                      modes: Sequence[BlendMode],
                      target_alphas: Optional[jnp.ndarray] = None,
                      gray_layers: Sequence[int] = ()) -> jnp.ndarray:
  """Evaluates the constraints that a feasible layer decomposition zeroes.

  The vector stacks the composited color minus the target color, then either
  the composited alpha minus one (initial decomposition) or the alphas minus
  `target_alphas` (refinement), then for each gray layer the 3-vector
  sqrt(3) c - |c| (1, 1, 1), which vanishes on the achromatic axis.

  Args:
    x: the [4 * num_layers] unknowns.
    target_color: the (3,) color of the flattened pixel.
    operators: num_layers CompositeOperators.
    modes: num_layers BlendModes.
    target_alphas: optional [num_layers] alphas to pin the layers to.
    gray_layers: indices of layers whose color must be gray.

  Returns:
    a [num_constraints] array.
  """
  num_layers = len(operators)
  alphas, colors = split_unknowns(x, num_layers)
  composited = composite.composite_layers(
      unknowns_to_layers(x, num_layers), operators, modes)

  parts = [composited[:3] - target_color]
  if target_alphas is None:
    parts.append(composited[3:] - 1.0)
  else:
    parts.append(alphas - target_alphas)
  for layer in gray_layers:
    color = colors[layer]
    parts.append(_SQRT_3 * color - jnp.linalg.norm(color) * jnp.ones(3))
  return jnp.concatenate(parts)


def constraint_jacobian(x: jnp.ndarray,
                        target_color: jnp.ndarray,
                        operators: Sequence[composite.CompositeOperator],
                        modes: Sequence[BlendMode],
                        target_alphas: Optional[jnp.ndarray] = None,
                        gray_layers: Sequence[int] = ()) -> jnp.ndarray:
  """Returns the [num_constraints, 4 * num_layers] Jacobian of the constraints.

  Arguments are the same as for `constraint_vector`. Only the presence of
  `target_alphas` matters; the target values themselves shift the constraints
  and do not appear in the result. The gray-layer block is zero where the
  layer color is too dark for its direction to be defined.
  """
  del target_color  # Constant offset.
  num_layers = len(operators)
  _, colors = split_unknowns(x, num_layers)
  _, jacobians = composite_jacobians.composite_layers_jacobians(
      unknowns_to_layers(x, num_layers), operators, modes)

  # [4, num_layers] and [4, 3 * num_layers] column blocks of the composite.
  by_alphas = jnp.transpose(jacobians[:, :, 3])
  by_colors = jnp.reshape(
      jnp.transpose(jacobians[:, :, :3], (1, 0, 2)), (4, 3 * num_layers))
  composite_rows = jnp.concatenate([by_alphas, by_colors], axis=1)
  rows = [composite_rows[:3]]
  if target_alphas is not None:
    rows.append(
        jnp.concatenate(
            [jnp.eye(num_layers),
             jnp.zeros((num_layers, 3 * num_layers))], axis=1))
  else:
    rows.append(composite_rows[3:])

  for layer in gray_layers:
    color = colors[layer]
    norm = jnp.linalg.norm(color)
    large_enough = norm > constants.GRAY_CONSTRAINT_EPSILON
    block = _SQRT_3 * jnp.eye(3) - jnp.outer(
        jnp.ones(3), color) / jnp.where(large_enough, norm, 1.0)
    block = jnp.where(large_enough, block, 0.0)
    start = num_layers + 3 * layer
    rows.append(
        jnp.zeros((3, 4 * num_layers)).at[:, start:start + 3].set(block))
  return jnp.concatenate(rows, axis=0)


def _distances(colors, color_models):
  return jnp.stack(
      [model.distance(colors[i]) for i, model in enumerate(color_models)])


def unmixing_energy(x: jnp.ndarray, color_models: Sequence[cm.ColorModel],
                    options: EnergyOptions = EnergyOptions()) -> jnp.ndarray:
  """Alpha-weighted sum of the color model distances of all layers.

  Args:
    x: the [4 * num_layers] unknowns.
    color_models: num_layers ColorModels.
    options: EnergyOptions selecting the optional regularizers.

  Returns:
    a scalar array.
  """
  num_layers = len(color_models)
  alphas, colors = split_unknowns(x, num_layers)
  energy = jnp.sum(alphas * _distances(colors, color_models))
  if options.use_sparsity:
    squared_norm = jnp.maximum(jnp.sum(alphas * alphas), 1e-12)
    energy += options.sparsity_weight * (jnp.sum(alphas) / squared_norm - 1.0)
  if options.use_minimum_alpha:
    energy += options.minimum_alpha_weight * jnp.sum(alphas)
  return energy


def unmixing_energy_gradient(
    x: jnp.ndarray, color_models: Sequence[cm.ColorModel],
    options: EnergyOptions = EnergyOptions()) -> jnp.ndarray:
  """Returns the [4 * num_layers] gradient of `unmixing_energy`."""
  num_layers = len(color_models)
  alphas, colors = split_unknowns(x, num_layers)
  by_alphas = _distances(colors, color_models)
  by_colors = jnp.stack([
      alphas[i] * model.distance_gradient(colors[i])
      for i, model in enumerate(color_models)
  ])
  if options.use_sparsity:
    alpha_sum = jnp.sum(alphas)
    squared_norm = jnp.maximum(jnp.sum(alphas * alphas), 1e-12)
    by_alphas += options.sparsity_weight * (
        squared_norm - 2.0 * alphas * alpha_sum) / (squared_norm * squared_norm)
  if options.use_minimum_alpha:
    by_alphas += options.minimum_alpha_weight
  return join_unknowns(by_alphas, by_colors)
