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

"""Generalized Porter-Duff compositing of blended RGBA layers."""

import dataclasses
from typing import Sequence

from unblend.jax import blend_modes
from unblend.jax import constants
from unblend.jax.constants import BlendMode
from unblend.jax.internal import layer_stack as layer_stack_lib
import jax.numpy as jnp


@dataclasses.dataclass(frozen=True)
class CompositeOperator:
  """Weights (X, Y, Z) of a generalized Porter-Duff compositing rule.

  X weighs the region covered by both layers, Y the region covered by the
  source only and Z the region covered by the destination only.
  """
  x: float
  y: float
  z: float

  def __post_init__(self):
    if min(self.x, self.y, self.z) < 0:
      raise ValueError(
          f'Composite operator weights must be non-negative, but found '
          f'({self.x}, {self.y}, {self.z})')

  @property
  def is_over(self) -> bool:
    return (self.x, self.y, self.z) == (1, 1, 1)

  @property
  def is_plus(self) -> bool:
    return (self.x, self.y, self.z) == (2, 1, 1)

  @property
  def name(self) -> str:
    if self.is_over:
      return 'source-over'
    if self.is_plus:
      return 'plus'
    return 'unknown'


OVER = CompositeOperator(1.0, 1.0, 1.0)
PLUS = CompositeOperator(2.0, 1.0, 1.0)

_OPERATORS_BY_NAME = {'source-over': OVER, 'over': OVER, 'plus': PLUS}


def operator_by_name(name: str) -> CompositeOperator:
  """Returns the composite operator for 'source-over' (or 'over') or 'plus'."""
  if name not in _OPERATORS_BY_NAME:
    raise ValueError(f'Unknown composite operator: {name}')
  return _OPERATORS_BY_NAME[name]


def composite_two_layers(source: jnp.ndarray,
                         destination: jnp.ndarray,
                         operator: CompositeOperator,
                         mode: BlendMode,
                         crop: bool = False) -> jnp.ndarray:
  """Composites a source RGBA layer onto a destination RGBA layer.

  Colors are not premultiplied. The blended color f(c_s, c_d) is weighted by
  the overlap of the two layers, and the source-only and destination-only
  regions keep their own colors. The result is normalized by the composited
  alpha, except where that alpha is numerically zero.

  Args:
    source: a [..., 4] array of RGBA values of the upper layer.
    destination: a [..., 4] array of RGBA values of the lower layer.
    operator: the CompositeOperator to apply.
    mode: the BlendMode used in the overlap region.
    crop: whether to clamp the output to [0, 1].

  Returns:
    a [..., 4] array of composited RGBA values.
  """
  c_s, a_s = source[..., :3], source[..., 3:]
  c_d, a_d = destination[..., :3], destination[..., 3:]

  alpha = (operator.x * a_s * a_d + operator.y * a_s * (1.0 - a_d) +
           operator.z * a_d * (1.0 - a_s))
  blended = blend_modes.blend(c_s, c_d, mode)
  premultiplied = (blended * a_s * a_d + operator.y * a_s * (1.0 - a_d) * c_s +
                   operator.z * a_d * (1.0 - a_s) * c_d)
  normalizable = alpha > constants.COMPOSITE_ALPHA_EPSILON
  color = jnp.where(normalizable,
                    premultiplied / jnp.where(normalizable, alpha, 1.0),
                    premultiplied)

  output = jnp.concatenate([color, alpha], axis=-1)
  return jnp.clip(output, 0.0, 1.0) if crop else output


def composite_layers(layers: jnp.ndarray,
                     operators: Sequence[CompositeOperator],
                     modes: Sequence[BlendMode],
                     crop: bool = False) -> jnp.ndarray:
  """Folds a bottom-to-top stack of RGBA layers into a single RGBA value.

  Layer 0 is the background and seeds the accumulator; every following layer
  is composited onto the accumulated result with its own operator and blend
  mode. The operator and mode of layer 0 are never used.

  Args:
    layers: a [num_layers, ..., 4] array of RGBA layers.
    operators: num_layers CompositeOperators.
    modes: num_layers BlendModes.
    crop: whether to clamp each intermediate composite to [0, 1].

  Returns:
    a [..., 4] array of composited RGBA values.

  Raises:
    ValueError: if the numbers of layers, operators and modes differ.
  """
  layers = jnp.asarray(layers)
  num_layers = layers.shape[0]
  if len(operators) != num_layers or len(modes) != num_layers:
    raise ValueError(
        f'Expected {num_layers} operators and modes, but found '
        f'{len(operators)} operators and {len(modes)} modes.')

  output = layers[0]
  for index in range(1, num_layers):
    output = composite_two_layers(layers[index], output, operators[index],
                                  modes[index], crop)
  return output


def composite_layer_images(layer_stack: layer_stack_lib.LayerStack,
                           operators: Sequence[CompositeOperator],
                           modes: Sequence[BlendMode],
                           crop: bool = True) -> jnp.ndarray:
  """Flattens the layer images of a LayerStack into one [H, W, 4] image."""
  return composite_layers(layer_stack.layers, operators, modes, crop)
