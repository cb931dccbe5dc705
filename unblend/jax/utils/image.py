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

"""Reading and writing of RGBA images as float arrays in [0, 1]."""

import io
from typing import List, Optional, Sequence

from etils import epath
from unblend.jax.constants import BlendMode
from unblend.jax.internal import layer_stack as layer_stack_lib
import numpy as np
from PIL import Image as PilImage


def ensure_rgba(image) -> np.ndarray:
  """Returns a float64 [height, width, 4] copy of a 1, 3 or 4 channel image.

  Intensity images are replicated to RGB and a missing alpha channel is
  filled with ones.
  """
  image = np.asarray(image, dtype=np.float64)
  if image.ndim == 2:
    image = image[..., np.newaxis]
  if image.ndim != 3 or image.shape[-1] not in (1, 3, 4):
    raise ValueError(
        f'Expected an image of shape [height, width] or [height, width, C] '
        f'with C in (1, 3, 4), but found {image.shape}')
  if image.shape[-1] == 1:
    image = np.tile(image, [1, 1, 3])
  if image.shape[-1] == 3:
    image = np.concatenate([image, np.ones(image.shape[:2] + (1,))], axis=-1)
  return image


def make_fully_opaque(image) -> np.ndarray:
  """Composites an image onto a white backdrop.

  Returns:
    a float64 [height, width, 4] image with rgb * alpha + (1 - alpha) colors
    and alpha one.
  """
  image = ensure_rgba(image)
  alpha = image[..., 3:]
  rgb = alpha * image[..., :3] + (1.0 - alpha)
  return np.concatenate([rgb, np.ones_like(alpha)], axis=-1)


def get_pil_formatted_image(image) -> np.ndarray:
  """Converts a [0,1] scaled RGBA image to a uint8 array for PilImage.fromarray.

  Values outside [0, 1] are clipped. The result is C-contiguous.
  """
  image = ensure_rgba(image)
  return np.ascontiguousarray(
      np.round(np.clip(image, 0.0, 1.0) * 255.0).astype(np.uint8))


def load_image(filename) -> np.ndarray:
  """Returns an image file as a float64 [height, width, 4] array in [0, 1]."""
  image_bytes = epath.Path(filename).read_bytes()
  pil_image = PilImage.open(io.BytesIO(image_bytes)).convert('RGBA')
  return np.asarray(pil_image).astype(np.float64) / 255.0


def save_image(image, filename) -> None:
  """Writes a [0, 1] image with 1, 3 or 4 channels as an RGBA file.

  The format follows the file extension.
  """
  path = epath.Path(filename)
  image_format = PilImage.registered_extensions().get(path.suffix.lower())
  if image_format is None:
    raise ValueError(f'Unsupported image file extension: {path.suffix!r}')
  buffer = io.BytesIO()
  PilImage.fromarray(get_pil_formatted_image(image)).save(
      buffer, format=image_format)
  path.write_bytes(buffer.getvalue())


def export_layers(layer_stack: layer_stack_lib.LayerStack,
                  directory,
                  prefix: str = 'layer',
                  with_alpha_channel: bool = False,
                  modes: Optional[Sequence[BlendMode]] = None
                 ) -> List[epath.Path]:
  """Writes each layer of a LayerStack to `<directory>/<prefix>_<index>.png`.

  Args:
    layer_stack: the LayerStack to write.
    directory: the output directory, created if missing.
    prefix: the file name prefix.
    with_alpha_channel: if True, each alpha matte is also written as a gray
      image to `<prefix>-alpha_<index>.png`.
    modes: optional blend modes of the layers. If given, the mode name is
      appended to each layer file name, as in `layer_1_Multiply.png`.

  Returns:
    the paths written, bottom layer first, each alpha matte following its
    layer.

  Raises:
    ValueError: if `modes` does not have one entry per layer.
  """
  if modes is not None and len(modes) != layer_stack.num_layers:
    raise ValueError(
        f'Expected {layer_stack.num_layers} blend modes, but found '
        f'{len(modes)}')
  directory = epath.Path(directory)
  directory.mkdir(parents=True, exist_ok=True)
  layers = np.asarray(layer_stack.layers)
  paths = []
  for index in range(layer_stack.num_layers):
    suffix = '' if modes is None else f'_{BlendMode(modes[index]).value}'
    path = directory / f'{prefix}_{index}{suffix}.png'
    save_image(layers[index], path)
    paths.append(path)
    if with_alpha_channel:
      alpha_path = directory / f'{prefix}-alpha_{index}.png'
      save_image(layers[index, ..., 3], alpha_path)
      paths.append(alpha_path)
  return paths
