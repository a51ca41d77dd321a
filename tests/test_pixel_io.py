import numpy as np
import pytest
from PIL import Image

from colorquant_lib import IndexedSink, InvalidInputError, Palette, RGBASink
from pixel_io import (
    ArraySource,
    ImageDitherer,
    ImageSource,
    get_image_info,
    narrow_channels,
    sink_to_image,
    validate_image_file,
    widen_channels,
)


def two_color_image(width=4, height=4):
    img = Image.new('RGB', (width, height), (0, 0, 0))
    for x in range(width // 2):
        for y in range(height):
            img.putpixel((x, y), (255, 255, 255))
    return img


def test_channel_widening_round_trips():
    values = np.array([0, 1, 0x7F, 0xAB, 0xFF], dtype=np.uint8)
    wide = widen_channels(values)
    assert wide.tolist() == [0, 0x101, 0x7F7F, 0xABAB, 0xFFFF]
    assert narrow_channels(wide).tolist() == values.tolist()


def test_array_source_adds_opaque_alpha():
    source = ArraySource(np.full((2, 3, 3), 0x80, dtype=np.uint8))
    assert (source.width, source.height) == (3, 2)
    assert source.get_rgba(2, 1) == (0x8080, 0x8080, 0x8080, 0xFFFF)


def test_array_source_keeps_16_bit_values():
    arr = np.array([[[1, 2, 3, 4]]], dtype=np.uint16)
    assert ArraySource(arr).get_rgba(0, 0) == (1, 2, 3, 4)


@pytest.mark.parametrize("array", [
    np.zeros((2, 2), dtype=np.uint8),
    np.zeros((2, 2, 2), dtype=np.uint8),
    np.zeros((2, 2, 4), dtype=np.float32),
])
def test_array_source_rejects_bad_arrays(array):
    with pytest.raises(InvalidInputError):
        ArraySource(array)


def test_image_source_converts_mode():
    img = Image.new('L', (2, 1), 0x40)
    source = ImageSource(img)
    assert source.image.mode == 'RGBA'
    assert source.get_rgba(1, 0) == (0x4040, 0x4040, 0x4040, 0xFFFF)


def test_indexed_sink_to_palette_image():
    palette = Palette.from_rgb8([(10, 20, 30), (200, 210, 220)])
    sink = IndexedSink(3, 2, palette)
    sink.set_index(2, 1, 1)
    image = sink_to_image(sink)
    assert image.mode == 'P'
    assert image.size == (3, 2)
    assert image.getpixel((2, 1)) == 1
    assert image.getpixel((0, 0)) == 0
    assert image.getpalette()[:6] == [10, 20, 30, 200, 210, 220]


def test_indexed_sink_rejects_out_of_range_index():
    sink = IndexedSink(1, 1, Palette.from_rgb8([(0, 0, 0)]))
    with pytest.raises(IndexError):
        sink.set_index(0, 0, 1)


def test_rgba_sink_to_image():
    sink = RGBASink(2, 1)
    sink.set_rgba(1, 0, (0xFFFF, 0x8000, 0x00FF, 0x1234))
    image = sink_to_image(sink)
    assert image.mode == 'RGBA'
    assert image.getpixel((1, 0)) == (0xFF, 0x80, 0x00, 0x12)
    assert image.getpixel((0, 0)) == (0, 0, 0, 0)


def test_validate_image_file(tmp_path):
    path = tmp_path / "a.png"
    two_color_image().save(path)
    (tmp_path / "notes.txt").write_text("hi")
    assert validate_image_file(str(path))
    assert not validate_image_file(str(tmp_path / "notes.txt"))
    assert not validate_image_file(str(tmp_path / "missing.png"))


def test_get_image_info(tmp_path):
    path = tmp_path / "a.png"
    two_color_image(5, 3).save(path)
    assert get_image_info(str(path)) == {'width': 5, 'height': 3, 'mode': 'RGB', 'format': 'PNG'}


def test_image_ditherer_indexed_output():
    ditherer = ImageDitherer(num_colors=4, indexed=True)
    result = ditherer.apply_dithering(two_color_image())
    assert result.mode == 'P'
    assert sorted(ditherer.palette_rgb()) == [(0, 0, 0), (255, 255, 255)]
    assert result.getpixel((0, 0)) != result.getpixel((3, 0))


def test_image_ditherer_with_rgb_palette():
    gradient = Image.linear_gradient('L').resize((16, 16)).convert('RGB')
    ditherer = ImageDitherer(palette=[(0, 0, 0), (255, 255, 255)])
    result = ditherer.apply_dithering(gradient)
    assert result.mode == 'RGBA'
    colors = {c for _, c in result.getcolors()}
    assert colors == {(0, 0, 0, 255), (255, 255, 255, 255)}


def test_image_ditherer_palette_rgb_before_render():
    assert ImageDitherer().palette_rgb() == []
