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

"""Decomposition of a flattened image into blended RGBA layers.

Typical use:

  registry = layers.parse_layer_descriptors(descriptors)
  initial = decomposition.decompose(image, registry)
  refined = decomposition.refine(image, initial, registry)
  flattened = decomposition.recomposite(refined, registry)

`decompose` solves every pixel independently, which leaves the alpha mattes
noisy. `refine` smooths the mattes with a guided filter and solves again for
the colors with the smoothed alphas held fixed.
"""

import dataclasses
import time
from typing import Optional, Sequence, Tuple

from absl import logging
from unblend.jax import composite
from unblend.jax import constants
from unblend.jax import layers as layers_lib
from unblend.jax.internal import augmented_lagrangian
from unblend.jax.internal import energy as energy_lib
from unblend.jax.internal import layer_stack as layer_stack_lib
from unblend.jax.internal import parallel
from unblend.jax.utils import guided_filter as guided_filter_lib
from unblend.jax.utils import image as image_lib
import numpy as np


class UnsupportedConfigurationError(ValueError):
  """Raised for layer configurations that refinement cannot normalize."""


@dataclasses.dataclass(frozen=True)
class DecompositionConfig:
  """Settings shared by `decompose` and `refine`."""
  # Number of worker threads; 0 uses one per CPU core.
  target_concurrency: int = 0
  solver: augmented_lagrangian.SolverConfig = dataclasses.field(
      default_factory=augmented_lagrangian.SolverConfig)
  energy: energy_lib.EnergyOptions = dataclasses.field(
      default_factory=energy_lib.EnergyOptions)
  # Indices of layers whose color is constrained to be gray.
  gray_layers: Tuple[int, ...] = ()
  # None picks a radius proportional to the image size.
  guided_filter_radius: Optional[int] = None
  guided_filter_epsilon: float = constants.GUIDED_FILTER_EPSILON


def _prepare_image(image) -> np.ndarray:
  image = image_lib.make_fully_opaque(image)
  if image.shape[0] == 0 or image.shape[1] == 0:
    raise ValueError(f'Expected a non-empty image, but found {image.shape}')
  return image


def _check_layers(layer_stack: layer_stack_lib.LayerStack,
                  registry: layers_lib.LayerRegistry, height: int, width: int):
  if layer_stack.num_layers != registry.num_layers:
    raise ValueError(
        f'Expected {registry.num_layers} layers, but found '
        f'{layer_stack.num_layers}')
  if (layer_stack.height, layer_stack.width) != (height, width):
    raise ValueError(
        f'Layers of size {layer_stack.width}x{layer_stack.height} do not match '
        f'the {width}x{height} image.')


def normalize_alphas(alphas,
                     operators: Sequence[composite.CompositeOperator],
                     opaque_background: bool = True) -> np.ndarray:
  """Rescales filtered alphas so that they composite to an opaque result.

  With the plus operator the composited alpha is the sum of the layer alphas,
  so the alphas are divided by their sum wherever it is positive. With the
  over operator an opaque background already makes the composite opaque, so
  the alphas are returned unchanged. The operator of layer 0 is never applied
  by compositing and does not take part in the decision.

  Args:
    alphas: a [num_layers, ...] array of alphas.
    operators: the num_layers CompositeOperators of the layers.
    opaque_background: whether the background layer is fully opaque.

  Returns:
    a float64 array shaped like `alphas`.

  Raises:
    UnsupportedConfigurationError: if the layers mix operator families, or
      use the over operator without an opaque background.
  """
  alphas = np.asarray(alphas, dtype=np.float64)
  applied = operators[1:]
  if all(operator.is_over for operator in applied):
    if not opaque_background:
      raise UnsupportedConfigurationError(
          'Refinement of layers using the over operator requires an opaque '
          'background.')
    return alphas
  if all(operator.is_plus for operator in applied):
    total = np.sum(alphas, axis=0)
    positive = total > 0.0
    return np.where(positive, alphas / np.where(positive, total, 1.0), alphas)
  raise UnsupportedConfigurationError(
      'Refinement requires all layers to use the over operator or all to use '
      'the plus operator, but found '
      f'{[operator.name for operator in operators]}')


def decompose(image,
              registry: layers_lib.LayerRegistry,
              opaque_background: bool = True,
              config: Optional[DecompositionConfig] = None
             ) -> layer_stack_lib.LayerStack:
  """Computes an initial layer decomposition of a flattened image.

  Args:
    image: a [height, width, 3 or 4] image in [0, 1]. Transparent pixels are
      composited onto white first.
    registry: the LayerRegistry describing the layers, background first.
    opaque_background: whether the background layer is fully opaque.
    config: optional DecompositionConfig.

  Returns:
    a LayerStack of registry.num_layers layers.
  """
  config = config or DecompositionConfig()
  image = _prepare_image(image)
  height, width = image.shape[:2]
  problem = augmented_lagrangian.PixelProblem(
      registry,
      refinement=False,
      energy_options=config.energy,
      gray_layers=config.gray_layers)
  output = np.zeros((registry.num_layers, height, width, 4))

  def process(x, y):
    state = augmented_lagrangian.solve_pixel(
        problem,
        image[y, x, :3],
        config.solver,
        opaque_background=opaque_background)
    output[:, y, x, :3] = state.colors
    output[:, y, x, 3] = state.alphas

  logging.info('Decomposing a %dx%d image into %d layers.', width, height,
               registry.num_layers)
  start = time.time()
  parallel.parallel_for_2d(width, height, process, config.target_concurrency)
  logging.info('Decomposition took %.2f s.', time.time() - start)
  return layer_stack_lib.LayerStack(layers=np.clip(output, 0.0, 1.0))


def refine(image,
           layer_stack: layer_stack_lib.LayerStack,
           registry: layers_lib.LayerRegistry,
           opaque_background: bool = True,
           smooth_background: bool = True,
           config: Optional[DecompositionConfig] = None
          ) -> layer_stack_lib.LayerStack:
  """Refines a decomposition with edge-aware smoothed alpha mattes.

  Args:
    image: the [height, width, 3 or 4] image that was decomposed.
    layer_stack: the LayerStack returned by `decompose`.
    registry: the LayerRegistry used for the decomposition.
    opaque_background: whether the background layer is fully opaque.
    smooth_background: whether to also smooth the background color and hold
      it fixed. Requires an opaque background.
    config: optional DecompositionConfig.

  Returns:
    the refined LayerStack.

  Raises:
    ValueError: if the layers do not match the image or registry, or if
      smooth_background is set without opaque_background.
    UnsupportedConfigurationError: if the layers mix operator families, or
      use the over operator without an opaque background.
  """
  config = config or DecompositionConfig()
  if smooth_background and not opaque_background:
    raise ValueError('smooth_background requires opaque_background.')
  image = _prepare_image(image)
  height, width = image.shape[:2]
  _check_layers(layer_stack, registry, height, width)

  radius = config.guided_filter_radius
  if radius is None:
    radius = guided_filter_lib.default_radius(width, height)
  epsilon = config.guided_filter_epsilon
  guidance = image[..., :3]
  prior = np.asarray(layer_stack.layers, dtype=np.float64)

  logging.info('Refining %d layers with guided filter radius %d.',
               registry.num_layers, radius)
  start = time.time()
  filtered = np.stack([
      np.asarray(
          guided_filter_lib.guided_filter(prior[i, ..., 3], guidance, radius,
                                          epsilon))
      for i in range(registry.num_layers)
  ])
  alphas = normalize_alphas(
      np.clip(filtered, 0.0, 1.0), registry.operators, opaque_background)
  background = None
  if smooth_background:
    background = np.clip(
        np.asarray(
            guided_filter_lib.guided_filter_channels(prior[0, ..., :3],
                                                     guidance, radius,
                                                     epsilon)), 0.0, 1.0)

  problem = augmented_lagrangian.PixelProblem(
      registry,
      refinement=True,
      energy_options=config.energy,
      gray_layers=config.gray_layers)
  output = np.zeros_like(prior)

  def process(x, y):
    state = augmented_lagrangian.solve_pixel(
        problem,
        image[y, x, :3],
        config.solver,
        opaque_background=opaque_background,
        target_alphas=alphas[:, y, x],
        initial_colors=prior[:, y, x, :3],
        background_color=None if background is None else background[y, x])
    output[:, y, x, :3] = state.colors
    output[:, y, x, 3] = state.alphas

  parallel.parallel_for_2d(width, height, process, config.target_concurrency)
  logging.info('Refinement took %.2f s.', time.time() - start)
  return layer_stack_lib.LayerStack(layers=np.clip(output, 0.0, 1.0))


def recomposite(layer_stack: layer_stack_lib.LayerStack,
                registry: layers_lib.LayerRegistry) -> np.ndarray:
  """Flattens a LayerStack back into a [height, width, 4] image."""
  if layer_stack.num_layers != registry.num_layers:
    raise ValueError(
        f'Expected {registry.num_layers} layers, but found '
        f'{layer_stack.num_layers}')
  return np.asarray(
      composite.composite_layer_images(layer_stack, registry.operators,
                                       registry.modes))
