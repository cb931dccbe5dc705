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

"""Storage class for the RGBA layer images of a decomposition."""

from flax import struct
import jax
import jax.numpy as jnp


@struct.dataclass
class LayerStack(object):
  """The layer images produced for one decomposed image.

  Holds a [num_layers, height, width, 4] array of straight (not premultiplied)
  RGBA values in [0, 1]. Layer 0 is the background, matching the order of the
  LayerRegistry that produced it.

  Immutable once created.
  """
  layers: jnp.ndarray

  def __post_init__(self):
    # During tracing the constructor may be re-run with placeholder members
    # that have no shape; the check only applies to real arrays.
    try:
      shape = self.layers.shape
    except AttributeError:
      return

    try:
      if len(shape) != 4 or shape[-1] != 4:
        raise ValueError(
            f"Expected layers of shape [num_layers, height, width, 4], but "
            f"found {shape}")
    except jax.errors.ConcretizationTypeError:
      pass

  @property
  def num_layers(self):
    return self.layers.shape[0]

  @property
  def height(self):
    return self.layers.shape[1]

  @property
  def width(self):
    return self.layers.shape[2]

  @property
  def alphas(self):
    """[num_layers, height, width] alpha mattes."""
    return self.layers[..., 3]

  @property
  def colors(self):
    """[num_layers, height, width, 3] layer colors."""
    return self.layers[..., :3]

  def layer(self, index):
    """Returns the [height, width, 4] image of one layer."""
    if not -self.num_layers <= index < self.num_layers:
      raise ValueError(
          f"Invalid layer index {index} for {self.num_layers} layers.")
    return self.layers[index]
