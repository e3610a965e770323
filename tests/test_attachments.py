import pytest

from taskkeeper.service.attachments import AvatarPolicy, sniff_media_type
from taskkeeper.service.errors import InvalidAttachment

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 16
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def test_sniff_media_type():
    assert sniff_media_type(JPEG) == "image/jpeg"
    assert sniff_media_type(PNG) == "image/png"
    assert sniff_media_type(b"GIF89a") is None


@pytest.mark.parametrize("filename", ["me.jpg", "ME.JPEG", "photo.png"])
def test_accepts_images(filename):
    content = PNG if filename.endswith("png") else JPEG

    assert AvatarPolicy().check(filename, content) in {"image/jpeg", "image/png"}


@pytest.mark.parametrize(
    "filename,content,reason",
    [
        ("me.jpg", b"", "empty"),
        ("me.gif", JPEG, "extension"),
        (None, JPEG, "extension"),
        ("me.jpg", b"not really a jpeg", "content"),
        ("me.jpg", JPEG + b"\x00" * 100, "too_large"),
    ],
)
def test_rejections(filename, content, reason):
    policy = AvatarPolicy(max_bytes=64)

    with pytest.raises(InvalidAttachment) as exc_info:
        policy.check(filename, content)
    assert exc_info.value.detail["reason"] == reason
    assert exc_info.value.status_code == 400
