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

"""Separable blend functions and their partial derivatives.

Every function here acts element-wise, so the same code blends a single
channel, an RGB triple or a whole [h, w, 3] image. `s` is the source (upper)
color and `d` the destination (lower) color, both expected in [0, 1].

The guarded branches of ColorDodge and ColorBurn divide by a safe denominator
so that neither the selected nor the discarded branch of a `jnp.where` produces
an infinity; this keeps `jax.grad` of these functions finite as well.
"""

from typing import Tuple

from unblend.jax import constants
from unblend.jax.constants import BlendMode
import jax.numpy as jnp

_EPSILON = constants.BLEND_FUNCTION_EPSILON


def _normal(s, d):
  return s, jnp.ones_like(s), jnp.zeros_like(d)


def _multiply(s, d):
  return s * d, d, s


def _screen(s, d):
  return 1.0 - (1.0 - s) * (1.0 - d), 1.0 - d, 1.0 - s


def _overlay(s, d):
  low = d <= 0.5
  value = jnp.where(low, 2.0 * s * d, 1.0 - 2.0 * (1.0 - s) * (1.0 - d))
  grad_s = jnp.where(low, 2.0 * d, 2.0 * (1.0 - d))
  grad_d = jnp.where(low, 2.0 * s, 2.0 * (1.0 - s))
  return value, grad_s, grad_d


def _darken(s, d):
  less = s < d
  return (jnp.where(less, s, d), jnp.where(less, 1.0, 0.0),
          jnp.where(less, 0.0, 1.0))


def _lighten(s, d):
  less = s < d
  return (jnp.where(less, d, s), jnp.where(less, 0.0, 1.0),
          jnp.where(less, 1.0, 0.0))


def _color_dodge(s, d):
  dark = d < _EPSILON
  bright = 1.0 - s < _EPSILON
  denominator = jnp.where(bright, 1.0, 1.0 - s)
  ratio = d / denominator
  value = jnp.where(dark, 0.0, jnp.where(bright, 1.0, jnp.minimum(1.0, ratio)))
  flat = dark | bright | (ratio > 1.0)
  grad_s = jnp.where(flat, 0.0, d / (denominator * denominator))
  grad_d = jnp.where(flat, 0.0, 1.0 / denominator)
  return value, grad_s, grad_d


def _color_burn(s, d):
  light = 1.0 - d < _EPSILON
  dark = s < _EPSILON
  denominator = jnp.where(dark, 1.0, s)
  ratio = (1.0 - d) / denominator
  value = jnp.where(light, 1.0,
                    jnp.where(dark, 0.0, 1.0 - jnp.minimum(1.0, ratio)))
  flat = light | dark | (ratio > 1.0)
  grad_s = jnp.where(flat, 0.0, (1.0 - d) / (denominator * denominator))
  grad_d = jnp.where(flat, 0.0, 1.0 / denominator)
  return value, grad_s, grad_d


def _hard_light(s, d):
  low = s <= 0.5
  value = jnp.where(low, 2.0 * s * d, 1.0 - 2.0 * (1.0 - s) * (1.0 - d))
  grad_s = jnp.where(low, 2.0 * d, 2.0 * (1.0 - d))
  grad_d = jnp.where(low, 2.0 * s, 2.0 * (1.0 - s))
  return value, grad_s, grad_d


def _soft_light(s, d):
  low_s = s <= 0.5
  low_d = d <= 0.25
  # Clamped so the square root branch stays finite where it is discarded.
  root = jnp.sqrt(jnp.maximum(d, 0.25))
  darkened = jnp.where(low_d, ((16.0 * d - 12.0) * d + 4.0) * d, root)
  darkened_grad = jnp.where(low_d, (48.0 * d - 24.0) * d + 4.0, 0.5 / root)
  value = jnp.where(low_s, d - (1.0 - 2.0 * s) * d * (1.0 - d),
                    d + (2.0 * s - 1.0) * (darkened - d))
  grad_s = jnp.where(low_s, 2.0 * d * (1.0 - d), 2.0 * (darkened - d))
  grad_d = jnp.where(low_s, 1.0 - (1.0 - 2.0 * s) * (1.0 - 2.0 * d),
                     1.0 + (2.0 * s - 1.0) * (darkened_grad - 1.0))
  return value, grad_s, grad_d


def _difference(s, d):
  less = s < d
  return (jnp.where(less, d - s, s - d), jnp.where(less, -1.0, 1.0),
          jnp.where(less, 1.0, -1.0))


def _exclusion(s, d):
  return s + d - 2.0 * s * d, 1.0 - 2.0 * d, 1.0 - 2.0 * s


_BLEND_FUNCTIONS = {
    BlendMode.NORMAL: _normal,
    BlendMode.MULTIPLY: _multiply,
    BlendMode.SCREEN: _screen,
    BlendMode.OVERLAY: _overlay,
    BlendMode.DARKEN: _darken,
    BlendMode.LIGHTEN: _lighten,
    BlendMode.COLOR_DODGE: _color_dodge,
    BlendMode.COLOR_BURN: _color_burn,
    BlendMode.HARD_LIGHT: _hard_light,
    BlendMode.SOFT_LIGHT: _soft_light,
    BlendMode.DIFFERENCE: _difference,
    BlendMode.EXCLUSION: _exclusion,
}


def blend_with_gradients(
    s, d, mode: BlendMode, crop: bool = False
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
  """Evaluates a blend function and both of its partial derivatives.

  Args:
    s: source color values in [0, 1].
    d: destination color values in [0, 1], broadcastable against `s`.
    mode: the BlendMode to apply.
    crop: if True, LinearDodge saturates at 1. The other modes never leave
      [0, 1] and ignore this flag.

  Returns:
    A (value, d_value/d_s, d_value/d_d) tuple of arrays with the broadcast
    shape of `s` and `d`.

  Raises:
    ValueError: if `mode` is not a BlendMode.
  """
  s, d = jnp.broadcast_arrays(jnp.asarray(s), jnp.asarray(d))
  if mode == BlendMode.LINEAR_DODGE:
    if not crop:
      return s + d, jnp.ones_like(s), jnp.ones_like(d)
    saturated = s + d > 1.0
    return (jnp.where(saturated, 1.0, s + d), jnp.where(saturated, 0.0, 1.0),
            jnp.where(saturated, 0.0, 1.0))
  if mode not in _BLEND_FUNCTIONS:
    raise ValueError(f'Unsupported blend mode: {mode}')
  return _BLEND_FUNCTIONS[mode](s, d)


def blend(s, d, mode: BlendMode, crop: bool = False) -> jnp.ndarray:
  """Blends source values `s` onto destination values `d`."""
  return blend_with_gradients(s, d, mode, crop)[0]


def blend_grad_s(s, d, mode: BlendMode, crop: bool = False) -> jnp.ndarray:
  """Partial derivative of `blend` with respect to the source values."""
  return blend_with_gradients(s, d, mode, crop)[1]


def blend_grad_d(s, d, mode: BlendMode, crop: bool = False) -> jnp.ndarray:
  """Partial derivative of `blend` with respect to the destination values."""
  return blend_with_gradients(s, d, mode, crop)[2]
