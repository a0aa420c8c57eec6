"""Pytest fixtures for vault transfer tests."""

import pytest
from pathlib import Path


# Minimal valid PNG file (1x1 transparent pixel)
PNG_DATA = (
    b'\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01'
    b'\x08\x06\x00\x00\x00\x1f\x15\xc4\x89\x00\x00\x00\nIDATx\x9cc\x00\x01'
    b'\x00\x00\x05\x00\x01\r\n-\xb4\x00\x00\x00\x00IEND\xaeB`\x82'
)


@pytest.fixture
def vaults(tmp_path):
    """Create empty source and destination vaults.

    Returns:
        Tuple of (source_root, destination_root) Path objects
    """
    source = tmp_path / "source"
    source.mkdir()
    destination = tmp_path / "destination"
    destination.mkdir()
    return source, destination


@pytest.fixture
def sample_note_with_attachment():
    """Note embedding one local image and linking one remote image."""
    return """# Trip
![[assets/pic.png]]
Remote: ![alt](https://example.com/x.png)
"""


@pytest.fixture
def populated_vaults(vaults, sample_note_with_attachment):
    """Source vault with notes/a.md embedding assets/pic.png.

    Returns:
        Tuple of (source_root, destination_root) Path objects
    """
    source, destination = vaults
    (source / "notes").mkdir()
    (source / "notes" / "a.md").write_text(sample_note_with_attachment, encoding="utf-8")
    (source / "assets").mkdir()
    (source / "assets" / "pic.png").write_bytes(PNG_DATA)
    return source, destination


@pytest.fixture
def config_path(tmp_path):
    """Location for a settings file that does not exist yet."""
    return tmp_path / "config" / "settings.json"
