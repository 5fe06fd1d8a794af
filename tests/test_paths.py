import os

import pytest

from security.paths import PathSecurityError, validate_path


@pytest.fixture
def sample(upload_root):
    path = upload_root / "photo.jpg"
    path.write_bytes(b"jpeg")
    return path


class TestValidatePath:
    def test_accepts_file_under_permitted_root(self, sample, upload_root):
        assert validate_path(str(sample), [upload_root]) == sample

    def test_accepts_nested_directory(self, upload_root):
        nested = upload_root / "album" / "2024"
        nested.mkdir(parents=True)
        assert validate_path(nested, [upload_root]) == nested

    def test_rejects_path_outside_roots(self, upload_root):
        with pytest.raises(PathSecurityError, match="outside"):
            validate_path("/etc/passwd", [upload_root])

    def test_rejects_relative_path(self, upload_root):
        with pytest.raises(PathSecurityError, match="absolute"):
            validate_path("photo.jpg", [upload_root])

    def test_rejects_traversal_component(self, sample, upload_root):
        sneaky = f"{upload_root}/album/../photo.jpg"
        with pytest.raises(PathSecurityError, match="traversal"):
            validate_path(sneaky, [upload_root])

    def test_rejects_encoded_traversal(self, upload_root):
        with pytest.raises(PathSecurityError, match="traversal"):
            validate_path(f"{upload_root}/%2E%2E/passwd", [upload_root])

    def test_double_dots_inside_a_name_are_fine(self, upload_root):
        path = upload_root / "notes..txt"
        path.write_text("x")
        assert validate_path(path, [upload_root]) == path

    def test_rejects_control_characters(self, upload_root):
        with pytest.raises(PathSecurityError, match="control"):
            validate_path(f"{upload_root}/bad\nname.txt", [upload_root])

    def test_rejects_overlong_path(self, upload_root):
        with pytest.raises(PathSecurityError, match="exceeds"):
            validate_path(f"{upload_root}/" + "a" * 5000, [upload_root])

    def test_rejects_symlink(self, sample, upload_root):
        link = upload_root / "link.jpg"
        os.symlink(sample, link)
        with pytest.raises(PathSecurityError, match="symbolic link"):
            validate_path(link, [upload_root])

    def test_rejects_path_through_symlinked_directory(self, tmp_path, upload_root):
        outside = tmp_path.resolve() / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("x")
        os.symlink(outside, upload_root / "linked")

        with pytest.raises(PathSecurityError, match="canonical"):
            validate_path(upload_root / "linked" / "secret.txt", [upload_root])

    def test_rejects_missing_file(self, upload_root):
        with pytest.raises(PathSecurityError, match="resolve"):
            validate_path(upload_root / "missing.jpg", [upload_root])
