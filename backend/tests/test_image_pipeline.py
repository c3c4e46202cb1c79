import io
from concurrent.futures import ThreadPoolExecutor

import pytest
from PIL import Image
from werkzeug.datastructures import FileStorage, MultiDict

from conftest import make_image_bytes
from image_pipeline import (
    PROCESSED_URL_PREFIX,
    UploadRejected,
    UploadedFile,
    build_processed_filename,
    collect_uploaded_files,
    parse_color_slot,
    process_color_images,
    remove_uploaded_image,
    resolve_color_slots,
)


def _storage(data: bytes, filename: str, content_type: str) -> FileStorage:
    return FileStorage(stream=io.BytesIO(data), filename=filename, content_type=content_type)


def _upload(field_name: str, size=(64, 48), filename: str = "shirt.png") -> UploadedFile:
    return UploadedFile(
        field_name=field_name,
        filename=filename,
        content_type="image/png",
        data=make_image_bytes(size),
    )


def _processed_files(root):
    directory = root / "products" / "processed"
    return sorted(directory.iterdir()) if directory.exists() else []


def test_collect_keeps_arrival_order_and_skips_empty_parts():
    parts = MultiDict(
        [
            ("colorImage_1", _storage(make_image_bytes(), "second.png", "image/png")),
            ("colorImage_3", _storage(b"", "", "application/octet-stream")),
            ("colorImage_0", _storage(make_image_bytes(), "first.png", "image/png")),
        ]
    )

    uploaded = collect_uploaded_files(parts)

    assert [item.field_name for item in uploaded] == ["colorImage_1", "colorImage_0"]
    assert [item.filename for item in uploaded] == ["second.png", "first.png"]
    assert all(item.size > 0 for item in uploaded)


def test_collect_rejects_non_image_parts():
    parts = MultiDict(
        [
            ("colorImage_0", _storage(make_image_bytes(), "ok.png", "image/png")),
            ("colorImage_1", _storage(b"plain text", "notes.txt", "text/plain")),
        ]
    )

    with pytest.raises(UploadRejected) as excinfo:
        collect_uploaded_files(parts)

    assert excinfo.value.status == 400
    assert excinfo.value.message == "Only image files are allowed!"


def test_collect_rejects_oversized_parts():
    parts = [("colorImage_0", _storage(b"x" * 2048, "big.png", "image/png"))]

    with pytest.raises(UploadRejected):
        collect_uploaded_files(parts, max_bytes=1024)


@pytest.mark.parametrize(
    "field_name, expected",
    [
        ("colorImage_0", 0),
        ("colorImage_12", 12),
        ("colors[3][image]", 3),
        ("colorImage_", None),
        ("colorImage_x", None),
        ("colors[1][name]", None),
        ("image", None),
        ("", None),
    ],
)
def test_parse_color_slot(field_name, expected):
    assert parse_color_slot(field_name) == expected


def test_single_file_is_matched_regardless_of_field_name():
    avatar = _upload("avatar")

    assert resolve_color_slots([avatar], [0]) == [(0, avatar)]


def test_first_upload_wins_for_duplicate_slots():
    first = _upload("colorImage_0", filename="first.png")
    second = _upload("colors[0][image]", filename="second.png")

    resolved = resolve_color_slots([first, second], [0, 1])

    assert resolved == [(0, first), (1, None)]


def test_slots_are_derived_from_field_names_when_not_requested():
    stray = _upload("gallery")
    second = _upload("colorImage_2")
    first = _upload("colors[0][image]")

    resolved = resolve_color_slots([stray, second, first])

    assert resolved == [(2, second), (0, first)]


def test_results_mirror_requested_slots(tmp_path):
    uploads = [_upload("colorImage_2", filename="red.png"), _upload("colorImage_0", filename="blue.png")]

    results = process_color_images(uploads, [0, 1, 2], str(tmp_path))

    assert len(results) == 3
    assert results[0].original_name == "blue.png"
    assert results[1] is None
    assert results[2].original_name == "red.png"
    assert len(_processed_files(tmp_path)) == 2


def test_processed_image_metadata_matches_disk(tmp_path):
    [result] = process_color_images([_upload("colorImage_0")], [0], str(tmp_path))

    assert result.mimetype == "image/jpeg"
    assert result.url == f"{PROCESSED_URL_PREFIX}{result.filename}"
    assert result.filename.startswith("processed-shirt-")
    assert result.filename.endswith(".jpg")
    assert result.size == (tmp_path / "products" / "processed" / result.filename).stat().st_size
    assert result.to_dict()["url"] == result.url


def test_large_images_are_scaled_into_bounding_box(tmp_path):
    [result] = process_color_images([_upload("colorImage_0", size=(1600, 1200))], [0], str(tmp_path))

    with Image.open(result.path) as image:
        assert image.format == "JPEG"
        assert image.size == (800, 600)


def test_small_images_are_not_upscaled(tmp_path):
    [result] = process_color_images([_upload("colorImage_0", size=(120, 40))], [0], str(tmp_path))

    with Image.open(result.path) as image:
        assert image.size == (120, 40)


def test_rgba_images_are_flattened_to_jpeg(tmp_path):
    buffer = io.BytesIO()
    Image.new("RGBA", (30, 30), (10, 20, 30, 128)).save(buffer, format="PNG")
    upload = UploadedFile("colorImage_0", "alpha.png", "image/png", buffer.getvalue())

    [result] = process_color_images([upload], [0], str(tmp_path))

    with Image.open(result.path) as image:
        assert image.mode == "RGB"


def test_corrupt_slot_does_not_block_siblings(tmp_path):
    broken = UploadedFile("colorImage_0", "broken.png", "image/png", b"definitely not a png")
    healthy = _upload("colorImage_1", filename="healthy.png")

    results = process_color_images([broken, healthy], [0, 1], str(tmp_path))

    assert results[0] is None
    assert results[1].original_name == "healthy.png"
    assert [path.name for path in _processed_files(tmp_path)] == [results[1].filename]


def test_concurrent_processing_generates_distinct_files(tmp_path):
    uploads = [_upload("colorImage_0", filename="same.png") for _ in range(8)]

    with ThreadPoolExecutor(max_workers=8) as executor:
        batches = list(
            executor.map(lambda upload: process_color_images([upload], [0], str(tmp_path)), uploads)
        )

    filenames = {batch[0].filename for batch in batches}
    assert len(filenames) == 8
    assert len(_processed_files(tmp_path)) == 8


def test_build_processed_filename_sanitizes_base_name():
    filename = build_processed_filename("../My Summer Shirt!!.PNG")

    assert filename.startswith("processed-My-Summer-Shirt-")
    assert filename.endswith(".jpg")
    assert "/" not in filename
    assert build_processed_filename("").startswith("processed-image-")


def test_remove_uploaded_image_deletes_files_under_root(tmp_path):
    [result] = process_color_images([_upload("colorImage_0")], [0], str(tmp_path))

    assert remove_uploaded_image(f"http://cdn.example.com{result.url}", str(tmp_path)) is True
    assert _processed_files(tmp_path) == []
    assert remove_uploaded_image(result.url, str(tmp_path)) is False


def test_remove_uploaded_image_ignores_foreign_and_escaping_urls(tmp_path):
    outside = tmp_path / "outside.txt"
    outside.write_text("keep me")
    root = tmp_path / "uploads"
    root.mkdir()

    assert remove_uploaded_image("/uploads/../outside.txt", str(root)) is False
    assert remove_uploaded_image("https://example.com/images/a.jpg", str(root)) is False
    assert remove_uploaded_image("", str(root)) is False
    assert outside.exists()


def test_missing_static_root_yields_null_slot():
    assert process_color_images([_upload("colorImage_0")], [0], None) == [None]


def test_processed_filenames_carry_monotonic_timestamp(monkeypatch):
    ticks = iter([1_000, 1_000])
    monkeypatch.setattr("image_pipeline.time.monotonic_ns", lambda: next(ticks))

    first = build_processed_filename("shirt.png")
    second = build_processed_filename("shirt.png")

    assert first.startswith("processed-shirt-1000-")
    assert second.startswith("processed-shirt-1000-")
    assert first != second
