from rolechain.constants import IMAGE_MARKER
from rolechain.contracts import MultipartContent, TextContent
from rolechain.multimodal import (
    build_message_content,
    extract_images,
    parse_image_marker,
    save_generated_image,
    sniff_media_type,
    split_reasoning,
)

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 16
GIF = b"GIF89a" + b"\x00" * 16


def test_sniff_media_type():
    assert sniff_media_type(JPEG) == "image/jpeg"
    assert sniff_media_type(b"\x89PNG....") == "image/png"
    assert sniff_media_type(GIF) == "image/gif"
    assert sniff_media_type(b"????") == "image/png"


def test_extract_images_reads_uploads(tmp_path):
    (tmp_path / "photo.jpg").write_bytes(JPEG)

    text, images = extract_images("look ![p](/uploads/photo.jpg) here", tmp_path)

    assert text == "look  here"
    assert len(images) == 1
    assert images[0].media_type == "image/jpeg"
    assert images[0].data == JPEG


def test_missing_and_foreign_images_stay_in_text(tmp_path):
    prompt = "![a](/uploads/missing.png) ![b](https://example.com/b.png) ![c](/uploads/../secret.png)"
    (tmp_path.parent / "secret.png").write_bytes(JPEG)

    text, images = extract_images(prompt, tmp_path)

    assert images == []
    assert text == prompt


def test_build_message_content(tmp_path):
    (tmp_path / "a.gif").write_bytes(GIF)

    plain = build_message_content("just text", tmp_path)
    assert isinstance(plain, TextContent)
    assert plain.text == "just text"

    multipart = build_message_content("what is this ![x](/uploads/a.gif)", tmp_path)
    assert isinstance(multipart, MultipartContent)
    assert [p.type for p in multipart.parts] == ["text", "image"]
    assert multipart.images[0].media_type == "image/gif"

    image_only = build_message_content("![x](/uploads/a.gif)", tmp_path)
    assert [p.type for p in image_only.parts] == ["image"]


def test_generated_image_marker(tmp_path):
    marker = save_generated_image(JPEG, tmp_path / "out", "gen")

    assert marker.startswith(IMAGE_MARKER)
    image = parse_image_marker("[REASONING]drawing[/REASONING]" + marker)
    assert image.filename == "gen.jpg"
    assert image.mimetype == "image/jpeg"
    assert image.size == len(JPEG)
    assert (tmp_path / "out" / "gen.jpg").read_bytes() == JPEG
    assert parse_image_marker("plain answer") is None


def test_split_reasoning():
    reasoning, visible = split_reasoning("[REASONING]think[/REASONING]answer[REASONING] more[/REASONING]")
    assert reasoning == "think more"
    assert visible == "answer"
