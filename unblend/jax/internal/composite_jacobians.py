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

"""Analytic Jacobians of the layer compositing chain.

All Jacobians use the convention rows = outputs (r, g, b, a) and
columns = inputs (r, g, b, a). Because the blend functions are separable, the
color-by-color blocks are diagonal.
"""

from typing import Sequence, Tuple

from unblend.jax import blend_modes
from unblend.jax import composite
from unblend.jax import constants
from unblend.jax.constants import BlendMode
import jax.numpy as jnp


def _assemble_jacobian(color_by_color, color_by_alpha, alpha_by_alpha):
  """Builds [..., 4, 4] Jacobians from their non-zero blocks.

  Args:
    color_by_color: [..., 3] diagonal of the color-by-color block.
    color_by_alpha: [..., 3] derivatives of the output color by input alpha.
    alpha_by_alpha: [..., 1] derivative of the output alpha by input alpha.

  Returns:
    a [..., 4, 4] array.
  """
  color_block = color_by_color[..., :, jnp.newaxis] * jnp.eye(3)
  top = jnp.concatenate([color_block, color_by_alpha[..., :, jnp.newaxis]],
                        axis=-1)
  bottom = jnp.concatenate(
      [jnp.zeros_like(color_by_alpha), alpha_by_alpha], axis=-1)
  return jnp.concatenate([top, bottom[..., jnp.newaxis, :]], axis=-2)


def composite_two_layers_jacobians(
    source: jnp.ndarray, destination: jnp.ndarray,
    operator: composite.CompositeOperator, mode: BlendMode
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
  """Composites two RGBA layers and differentiates the result.

  Matches `composite.composite_two_layers` without cropping, including its
  fallback to the unnormalized color where the composited alpha vanishes.

  Args:
    source: a [..., 4] array of RGBA values of the upper layer.
    destination: a [..., 4] array of RGBA values of the lower layer.
    operator: the CompositeOperator to apply.
    mode: the BlendMode used in the overlap region.

  Returns:
    A tuple of the [..., 4] composited RGBA values, the [..., 4, 4] Jacobian
    by the source and the [..., 4, 4] Jacobian by the destination.
  """
  c_s, a_s = source[..., :3], source[..., 3:]
  c_d, a_d = destination[..., :3], destination[..., 3:]
  x, y, z = operator.x, operator.y, operator.z

  alpha = x * a_s * a_d + y * a_s * (1.0 - a_d) + z * a_d * (1.0 - a_s)
  blended, blended_grad_s, blended_grad_d = blend_modes.blend_with_gradients(
      c_s, c_d, mode)
  premultiplied = (blended * a_s * a_d + y * a_s * (1.0 - a_d) * c_s +
                   z * a_d * (1.0 - a_s) * c_d)

  normalizable = alpha > constants.COMPOSITE_ALPHA_EPSILON
  safe_alpha = jnp.where(normalizable, alpha, 1.0)
  color = jnp.where(normalizable, premultiplied / safe_alpha, premultiplied)

  def normalize(premultiplied_grad, alpha_grad):
    # Quotient rule, or the plain numerator derivative past the fallback.
    return jnp.where(normalizable,
                     (premultiplied_grad - color * alpha_grad) / safe_alpha,
                     premultiplied_grad)

  alpha_by_a_s = x * a_d + y * (1.0 - a_d) - z * a_d
  premultiplied_by_c_s = a_s * a_d * blended_grad_s + y * (1.0 - a_d) * a_s
  premultiplied_by_a_s = (blended * a_d + y * (1.0 - a_d) * c_s -
                          z * a_d * c_d)
  by_source = _assemble_jacobian(
      normalize(premultiplied_by_c_s, 0.0),
      normalize(premultiplied_by_a_s, alpha_by_a_s), alpha_by_a_s)

  alpha_by_a_d = x * a_s - y * a_s + z * (1.0 - a_s)
  premultiplied_by_c_d = a_s * a_d * blended_grad_d + z * (1.0 - a_s) * a_d
  premultiplied_by_a_d = (blended * a_s - y * a_s * c_s +
                          z * (1.0 - a_s) * c_d)
  by_destination = _assemble_jacobian(
      normalize(premultiplied_by_c_d, 0.0),
      normalize(premultiplied_by_a_d, alpha_by_a_d), alpha_by_a_d)

  return jnp.concatenate([color, alpha], axis=-1), by_source, by_destination


def composite_layers_jacobians(
    layers: jnp.ndarray, operators: Sequence[composite.CompositeOperator],
    modes: Sequence[BlendMode]) -> Tuple[jnp.ndarray, jnp.ndarray]:
  """Composites a layer stack and differentiates it by every layer.

  The final composite of layers 0..k is the source-composite of layer k onto
  the composite of layers 0..k-1. Its Jacobian by layer k is the source
  Jacobian of that step, and its Jacobian by an earlier layer i is the
  destination Jacobian of the step times the Jacobian of the 0..k-1 composite
  by layer i. The intermediate composites and Jacobians are accumulated from
  the bottom up, so the cost is O(num_layers^2) 4x4 products and no recursion.

  Args:
    layers: a [num_layers, ..., 4] array of RGBA layers, background first.
    operators: num_layers CompositeOperators.
    modes: num_layers BlendModes.

  Returns:
    A tuple of the [..., 4] composited RGBA values and a
    [num_layers, ..., 4, 4] array of Jacobians of the composite by each layer.

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
  jacobians = [jnp.broadcast_to(jnp.eye(4), output.shape[:-1] + (4, 4))]
  for k in range(1, num_layers):
    output, by_source, by_destination = composite_two_layers_jacobians(
        layers[k], output, operators[k], modes[k])
    jacobians = [jnp.matmul(by_destination, j) for j in jacobians]
    jacobians.append(by_source)
  return output, jnp.stack(jacobians)
