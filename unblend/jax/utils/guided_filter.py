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

"""Edge-aware smoothing with the guided filter of He, Sun and Tang (2010).

The filter output is locally an affine function of a color guidance image, so
edges of the guidance survive while the filtered field is smoothed elsewhere.
Every stage below is a whole-image array operation.
"""

from absl import logging
from unblend.jax import constants
import jax.numpy as jnp


def default_radius(width: int, height: int) -> int:
  """Returns the window radius used when none is configured."""
  radius = constants.GUIDED_FILTER_RADIUS_PER_MILLE * min(width, height) // 1000
  logging.debug('Guided filter radius %d for a %dx%d image.', radius, width,
                height)
  return radius


def box_filter(image: jnp.ndarray, radius: int) -> jnp.ndarray:
  """Averages an image over (2 * radius + 1)^2 windows.

  Samples outside the image take the value of the nearest border pixel, so
  every output is a mean over the full window size.

  Args:
    image: a [height, width, ...] array. Trailing dimensions are filtered
      independently.
    radius: non-negative window radius in pixels. 0 returns the input.

  Returns:
    an array with the shape of `image`.

  Raises:
    ValueError: if the radius is negative or the image has fewer than two
      dimensions.
  """
  if radius < 0:
    raise ValueError(f'radius must be >= 0, but found {radius}')
  image = jnp.asarray(image)
  if image.ndim < 2:
    raise ValueError(
        f'Expected an image of shape [height, width, ...], but found '
        f'{image.shape}')
  if radius == 0:
    return image

  height, width = image.shape[:2]
  size = 2 * radius + 1
  trailing = ((0, 0),) * (image.ndim - 2)
  padded = jnp.pad(image, ((radius, radius), (radius, radius)) + trailing,
                   mode='edge')
  # Summed-area table with a leading row and column of zeros.
  table = jnp.cumsum(jnp.cumsum(padded, axis=0), axis=1)
  table = jnp.pad(table, ((1, 0), (1, 0)) + trailing)
  window_sums = (
      table[size:size + height, size:size + width] -
      table[:height, size:size + width] - table[size:size + height, :width] +
      table[:height, :width])
  return window_sums / (size * size)


def guided_filter(field: jnp.ndarray,
                  guidance: jnp.ndarray,
                  radius: int,
                  epsilon: float = constants.GUIDED_FILTER_EPSILON
                 ) -> jnp.ndarray:
  """Smooths a scalar field guided by a color image.

  Args:
    field: the [height, width] field to filter, e.g. an alpha matte.
    guidance: the [height, width, 3] guidance image.
    radius: window radius in pixels.
    epsilon: regularization of the local linear fits. Larger values smooth
      more across guidance edges.

  Returns:
    the [height, width] filtered field.

  Raises:
    ValueError: if the shapes of field and guidance do not agree.
  """
  field = jnp.asarray(field)
  guidance = jnp.asarray(guidance)
  if field.ndim != 2:
    raise ValueError(
        f'Expected a field of shape [height, width], but found {field.shape}')
  if guidance.shape != field.shape + (3,):
    raise ValueError(
        f'Expected guidance of shape {field.shape + (3,)}, but found '
        f'{guidance.shape}')

  mean_guidance = box_filter(guidance, radius)
  mean_field = box_filter(field, radius)
  covariance_guidance_field = (
      box_filter(guidance * field[..., jnp.newaxis], radius) -
      mean_guidance * mean_field[..., jnp.newaxis])
  guidance_outer = guidance[..., :, jnp.newaxis] * guidance[..., jnp.newaxis, :]
  covariance_guidance = (
      box_filter(guidance_outer, radius) -
      mean_guidance[..., :, jnp.newaxis] * mean_guidance[..., jnp.newaxis, :])

  # Per-pixel regularized least squares for the linear coefficients.
  a = jnp.linalg.solve(covariance_guidance + epsilon * jnp.eye(3),
                       covariance_guidance_field[..., jnp.newaxis])[..., 0]
  b = mean_field - jnp.sum(a * mean_guidance, axis=-1)

  return box_filter(b, radius) + jnp.sum(
      box_filter(a, radius) * guidance, axis=-1)


def guided_filter_channels(field: jnp.ndarray,
                           guidance: jnp.ndarray,
                           radius: int,
                           epsilon: float = constants.GUIDED_FILTER_EPSILON
                          ) -> jnp.ndarray:
  """Applies `guided_filter` to each channel of a [height, width, C] field."""
  field = jnp.asarray(field)
  if field.ndim != 3:
    raise ValueError(
        f'Expected a field of shape [height, width, channels], but found '
        f'{field.shape}')
  return jnp.stack([
      guided_filter(field[..., channel], guidance, radius, epsilon)
      for channel in range(field.shape[-1])
  ], axis=-1)
