import json

import pytest
import requests
from PIL import Image

import palette_utils
from colorquant_lib import InvalidParameterError, Palette
from palette_utils import (
    PaletteManager,
    generate_kmeans_palette,
    generate_uniform_palette,
    hex_to_rgb,
    import_lospec_palette,
    load_palettes_from_file,
    palette_from_hex_list,
    resolve_palette_source,
    rgb_to_hex,
)


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


def test_hex_conversions():
    assert hex_to_rgb("#FF8000") == (255, 128, 0)
    assert hex_to_rgb(" 0a0b0c ") == (10, 11, 12)
    assert rgb_to_hex((255, 128, 0)) == "#ff8000"


@pytest.mark.parametrize("value", ["#FFF", "#GGGGGG", ""])
def test_hex_to_rgb_rejects_garbage(value):
    with pytest.raises(InvalidParameterError):
        hex_to_rgb(value)


def test_palette_from_hex_list():
    palette = palette_from_hex_list(["#000000", "#ffffff"])
    assert palette == Palette(((0, 0, 0, 0xFFFF), (0xFFFF, 0xFFFF, 0xFFFF, 0xFFFF)))


def test_load_palettes_missing_or_broken(tmp_path):
    assert load_palettes_from_file(str(tmp_path / "none.json")) == []
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    assert load_palettes_from_file(str(broken)) == []


def test_palette_manager_round_trip(tmp_path):
    path = str(tmp_path / "palette.json")
    manager = PaletteManager(path)
    manager.add_palette("mono", ["#000000", "#FFFFFF"])
    manager.add_palette("mono", ["#000000", "#808080", "#FFFFFF"])

    reloaded = PaletteManager(path)
    assert reloaded.list_palette_names() == ["mono"]
    assert len(reloaded.get_palette_colors("mono")) == 3
    assert reloaded.get_palette_colors("missing") is None

    reloaded.remove_palette("mono")
    assert PaletteManager(path).list_palette_names() == []


def test_palette_manager_rejects_bad_colors(tmp_path):
    path = tmp_path / "palette.json"
    manager = PaletteManager(str(path))
    with pytest.raises(InvalidParameterError):
        manager.add_palette("bad", ["#12345"])
    assert not path.exists()


def test_import_lospec_palette(monkeypatch):
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return FakeResponse({"name": "Two Tone", "colors": ["FF0000", "00FF00"]})

    monkeypatch.setattr(palette_utils.requests, "get", fake_get)
    data = import_lospec_palette("https://lospec.com/palette-list/two-tone")
    assert data == {"name": "Two Tone", "colors": ["#ff0000", "#00ff00"]}
    assert calls == ["https://lospec.com/palette-list/two-tone.json"]


@pytest.mark.parametrize("fake_get", [
    lambda url, timeout: FakeResponse({}, status=404),
    lambda url, timeout: FakeResponse({"name": "empty", "colors": []}),
])
def test_import_lospec_palette_failures(monkeypatch, fake_get):
    monkeypatch.setattr(palette_utils.requests, "get", fake_get)
    assert import_lospec_palette("https://lospec.com/palette-list/nope") is None


def test_import_lospec_palette_network_error(monkeypatch):
    def fake_get(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(palette_utils.requests, "get", fake_get)
    assert import_lospec_palette("nope") is None


def test_uniform_palette():
    palette = generate_uniform_palette(8)
    assert len(palette) == 8
    assert palette.to_rgb8()[0] == (0, 0, 0)
    assert palette.to_rgb8()[-1] == (255, 255, 255)
    assert len(generate_uniform_palette(5)) == 5


def test_kmeans_palette_clamped_to_unique_colors():
    img = Image.new('RGB', (6, 6), (255, 0, 0))
    img.paste((0, 0, 255), (0, 0, 3, 6))
    palette = generate_kmeans_palette(img, 4)
    assert sorted(palette.to_rgb8()) == [(0, 0, 255), (255, 0, 0)]


@pytest.mark.parametrize("generate", [generate_kmeans_palette, generate_uniform_palette])
def test_generated_palette_size_must_be_positive(generate):
    with pytest.raises(InvalidParameterError):
        if generate is generate_uniform_palette:
            generate(0)
        else:
            generate(Image.new('RGB', (2, 2)), 0)


def test_resolve_median_cut_defers_to_ditherer():
    assert resolve_palette_source("median_cut", Image.new('RGB', (2, 2)), 4) is None


def test_resolve_named_palette(tmp_path):
    manager = PaletteManager(str(tmp_path / "palette.json"))
    manager.add_palette("mono", ["#000000", "#ffffff"])
    image = Image.new('RGB', (2, 2))
    assert len(resolve_palette_source("custom:mono", image, 4, manager)) == 2
    assert len(resolve_palette_source("mono", image, 4, manager)) == 2
    with pytest.raises(InvalidParameterError):
        resolve_palette_source("custom:other", image, 4, manager)


def test_resolve_file_palette(tmp_path):
    ref = tmp_path / "ref.png"
    img = Image.new('RGB', (4, 4), (10, 20, 30))
    img.paste((200, 100, 0), (0, 0, 2, 4))
    img.save(ref)
    palette = resolve_palette_source(f"file:{ref}", Image.new('RGB', (2, 2)), 8)
    assert sorted(palette.to_rgb8()) == [(10, 20, 30), (200, 100, 0)]
    with pytest.raises(InvalidParameterError):
        resolve_palette_source(f"file:{tmp_path / 'missing.png'}", img, 8)


def test_resolve_lospec_palette(monkeypatch):
    monkeypatch.setattr(palette_utils.requests, "get",
                        lambda url, timeout: FakeResponse({"name": "x", "colors": ["000000", "ffffff", "ff0000"]}))
    palette = resolve_palette_source("lospec:https://lospec.com/palette-list/x", Image.new('RGB', (2, 2)), 4)
    assert palette.to_rgb8() == [(0, 0, 0), (255, 255, 255), (255, 0, 0)]

    monkeypatch.setattr(palette_utils.requests, "get", lambda url, timeout: FakeResponse({}, status=500))
    with pytest.raises(InvalidParameterError):
        resolve_palette_source("lospec:x", Image.new('RGB', (2, 2)), 4)


def test_saved_file_is_plain_json(tmp_path):
    path = tmp_path / "palette.json"
    PaletteManager(str(path)).add_palette("p", ["#010203"])
    assert json.loads(path.read_text()) == [{"name": "p", "colors": ["#010203"]}]
