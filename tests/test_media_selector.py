"""Sticker and media catalogue."""
import io
import json
import random

import pytest
from PIL import Image

from warmer.src.core.media_selector import MediaSelector, to_webp_sticker


def _png(size=(300, 120)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, (0, 128, 255)).save(out, format="PNG")
    return out.getvalue()


@pytest.fixture
def selector(tmp_path):
    return MediaSelector(str(tmp_path / "vault"), random.Random(1))


def test_empty_catalogue_returns_none(selector):
    assert selector.select_random_sticker("funny") is None
    assert selector.select_random_media() is None
    assert selector.categories() == {}


def test_sticker_is_normalised_to_webp(selector):
    path = selector.add_sticker("funny", "wide.png", _png())
    assert path.suffix == ".webp"
    with Image.open(path) as img:
        assert img.format == "WEBP"
        assert img.size == (512, 512)
    assert selector.categories() == {"funny": 1}
    assert selector.select_random_sticker("funny") == path


def test_to_webp_sticker_keeps_transparency():
    with Image.open(io.BytesIO(to_webp_sticker(_png((10, 10))))) as img:
        assert img.mode == "RGBA"


def test_delete_sticker(selector):
    path = selector.add_sticker("love", "heart.png", _png())
    assert selector.delete_sticker("love", path.name) is True
    assert selector.delete_sticker("love", path.name) is False
    assert selector.select_random_sticker("love") is None


def test_snapshot_needs_reload(selector):
    category = selector.sticker_dir / "wow"
    category.mkdir()
    (category / "omg.webp").write_bytes(to_webp_sticker(_png()))
    assert selector.select_random_sticker("wow") is None
    selector.reload()
    assert selector.select_random_sticker("wow") is not None


def test_vanished_files_are_skipped(selector):
    path = selector.add_sticker("sad", "cry.png", _png())
    path.unlink()
    assert selector.select_random_sticker("sad") is None


def test_media_round_trip(selector):
    item = selector.add_media("beach.jpg", b"jpegbytes", "image/jpeg", "a sunny beach")
    assert item.filename.endswith("_beach.jpg")
    assert item.read_bytes() == b"jpegbytes"
    assert selector.select_random_media() == item

    index = json.loads((selector.media_dir / "media.json").read_text())
    assert index[0]["context"] == "a sunny beach"

    assert selector.update_media_context(item.id, "a rainy beach") is True
    assert selector.list_media()[0].context == "a rainy beach"

    assert selector.delete_media(item.id) is True
    assert selector.list_media() == []
    assert selector.delete_media(item.id) is False


def test_missing_media_file_skipped(selector):
    item = selector.add_media("gone.jpg", b"x", "image/jpeg")
    item.path.unlink()
    assert selector.select_random_media() is None
    assert item.read_bytes() is None


def test_corrupt_index_treated_as_empty(selector):
    (selector.media_dir / "media.json").write_text("{not json")
    selector.reload()
    assert selector.list_media() == []
