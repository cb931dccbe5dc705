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

"""Layer descriptors and the registry that owns them."""

import dataclasses
from typing import Any, Dict, Iterable, Mapping, Sequence, Tuple

from unblend.jax import color_model as cm
from unblend.jax import composite
from unblend.jax.constants import BlendMode
import numpy as np


@dataclasses.dataclass(frozen=True)
class LayerDescriptor:
  """How one output layer is composited and which colors it prefers."""
  operator: composite.CompositeOperator
  mode: BlendMode
  color_model: cm.ColorModel

  def to_dict(self) -> Dict[str, Any]:
    """Returns the descriptor in the layout read by `parse_layer_descriptors`.

    Raises:
      ValueError: if the color model is not a GaussianColorModel.
    """
    if not isinstance(self.color_model, cm.GaussianColorModel):
      raise ValueError(
          f'Only Gaussian color models can be exported, got {self.color_model}')
    covariance = self.color_model.covariance
    if np.allclose(covariance, covariance[0, 0] * np.eye(3)):
      variance = float(covariance[0, 0])
    else:
      variance = covariance.flatten(order='F').tolist()
    return {
        'comp_op': self.operator.name,
        'mode': self.mode.value,
        'color_model': {
            'primary_color': self.color_model.mean.tolist(),
            'color_variance': variance,
        },
    }


class LayerRegistry(Sequence[LayerDescriptor]):
  """The ordered, immutable owner of the layer descriptors of a decomposition.

  Index 0 is the background (bottom-most) layer. Other components refer to
  layers and their color models by index rather than holding models
  themselves.
  """

  def __init__(self, descriptors: Iterable[LayerDescriptor]):
    self._descriptors = tuple(descriptors)
    if not self._descriptors:
      raise ValueError('A layer registry needs at least one layer.')

  def __getitem__(self, index):
    return self._descriptors[index]

  def __len__(self):
    return len(self._descriptors)

  def __repr__(self):
    return f'LayerRegistry({list(self._descriptors)})'

  @property
  def num_layers(self) -> int:
    return len(self._descriptors)

  @property
  def operators(self) -> Tuple[composite.CompositeOperator, ...]:
    return tuple(d.operator for d in self._descriptors)

  @property
  def modes(self) -> Tuple[BlendMode, ...]:
    return tuple(d.mode for d in self._descriptors)

  @property
  def color_models(self) -> Tuple[cm.ColorModel, ...]:
    return tuple(d.color_model for d in self._descriptors)

  def color_model(self, index: int) -> cm.ColorModel:
    return self._descriptors[index].color_model

  def with_color_model(self, index: int,
                       model: cm.ColorModel) -> 'LayerRegistry':
    """Returns a new registry with the color model of one layer replaced."""
    descriptors = list(self._descriptors)
    descriptors[index] = dataclasses.replace(descriptors[index],
                                             color_model=model)
    return LayerRegistry(descriptors)


def _parse_covariance(variance) -> np.ndarray:
  if np.isscalar(variance):
    return float(variance) * np.eye(3)
  values = np.asarray(variance, dtype=np.float64)
  if values.shape != (9,):
    raise ValueError(
        f'color_variance must be a number or 9 numbers, but found {variance}')
  return values.reshape((3, 3), order='F')


def parse_layer_descriptor(item: Mapping[str, Any]) -> LayerDescriptor:
  """Builds a descriptor from one mapping of a layer descriptor stream."""
  try:
    mode = BlendMode(item['mode'])
    operator = composite.operator_by_name(item['comp_op'])
    model = item['color_model']
    mean = model['primary_color']
    covariance = _parse_covariance(model['color_variance'])
  except KeyError as e:
    raise ValueError(f'Layer descriptor {item} is missing {e}') from e
  return LayerDescriptor(
      operator, mode, cm.GaussianColorModel.from_covariance(mean, covariance))


def parse_layer_descriptors(
    items: Iterable[Mapping[str, Any]]) -> LayerRegistry:
  """Builds a registry from a bottom-to-top sequence of descriptor mappings.

  Each mapping has the keys 'comp_op' ('source-over', 'over' or 'plus'),
  'mode' (a BlendMode name such as 'Multiply') and 'color_model', itself a
  mapping with 'primary_color' (three numbers) and 'color_variance' (either an
  isotropic variance or the nine entries of a covariance matrix in
  column-major order).

  Args:
    items: an iterable of descriptor mappings, background first.

  Returns:
    A LayerRegistry.

  Raises:
    ValueError: if a mapping is incomplete or names an unknown mode/operator.
  """
  return LayerRegistry(parse_layer_descriptor(item) for item in items)
