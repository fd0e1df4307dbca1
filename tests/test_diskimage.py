"""Unit tests for DiskImageWriter and the hdiutil imager."""

import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from macpackager import (
    CommandError,
    DiskImager,
    DiskImageWriter,
    HdiutilImager,
    PackagingError,
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def sample_bundle(temp_dir):
    """Create a sample .app bundle structure."""
    bundle = temp_dir / "Log Rocket.app"
    macos = bundle / "Contents" / "MacOS"
    macos.mkdir(parents=True)
    exe = macos / "log-rocket"
    exe.write_bytes(b"#!/bin/bash\necho hello")
    exe.chmod(0o755)
    return bundle


class FakeImager(DiskImager):
    """Imager that writes a marker file instead of calling hdiutil."""

    def __init__(self):
        self.calls = []

    def create(self, source, output, volume_name):
        self.calls.append((source, output, volume_name))
        output.write_bytes(b"dmg:" + source.name.encode())
        return output


class FailingImager(DiskImager):
    def create(self, source, output, volume_name):
        raise CommandError("hdiutil create", 1, "hdiutil: create failed")


class SilentImager(DiskImager):
    """Imager that reports success without producing a file."""

    def create(self, source, output, volume_name):
        return output


class TestDiskImageWriter:
    """Tests for DiskImageWriter.write()."""

    def test_write(self, sample_bundle, temp_dir):
        """Test the imager is called with the bundle and volume name."""
        imager = FakeImager()
        output = temp_dir / "LogRocket.dmg"
        writer = DiskImageWriter(sample_bundle, output, "Log Rocket", imager)

        assert writer.write() == output
        assert output.exists()
        assert imager.calls == [(sample_bundle, output, "Log Rocket")]

    def test_default_volume_name(self, sample_bundle, temp_dir):
        """Test the volume name defaults to the bundle stem."""
        writer = DiskImageWriter(sample_bundle, temp_dir / "x.dmg")
        assert writer.volume_name == "Log Rocket"

    def test_previous_image_replaced(self, sample_bundle, temp_dir):
        """Test exactly one image exists after repeated runs."""
        output = temp_dir / "LogRocket.dmg"
        output.write_bytes(b"old image")
        for _ in range(3):
            DiskImageWriter(
                sample_bundle, output, "Log Rocket", FakeImager()
            ).write()

        assert output.read_bytes() == b"dmg:Log Rocket.app"
        assert sorted(p.name for p in temp_dir.glob("*.dmg")) == [
            "LogRocket.dmg"
        ]

    def test_stale_image_removed_before_tool(self, sample_bundle, temp_dir):
        """Test the old file is gone before the imager runs."""
        output = temp_dir / "LogRocket.dmg"
        output.write_bytes(b"old image")
        seen = []

        class CheckingImager(FakeImager):
            def create(self, source, output, volume_name):
                seen.append(output.exists())
                return super().create(source, output, volume_name)

        DiskImageWriter(sample_bundle, output, imager=CheckingImager()).write()
        assert seen == [False]

    def test_missing_source(self, temp_dir):
        """Test error when the bundle does not exist."""
        writer = DiskImageWriter(
            temp_dir / "Missing.app", temp_dir / "x.dmg", imager=FakeImager()
        )
        with pytest.raises(PackagingError, match="does not exist"):
            writer.write()

    def test_tool_failure(self, sample_bundle, temp_dir):
        """Test PackagingError carries the tool diagnostic."""
        writer = DiskImageWriter(
            sample_bundle, temp_dir / "x.dmg", imager=FailingImager()
        )
        with pytest.raises(PackagingError, match="create failed"):
            writer.write()
        # bundle is left intact
        assert (sample_bundle / "Contents" / "MacOS" / "log-rocket").exists()

    def test_no_output_produced(self, sample_bundle, temp_dir):
        """Test PackagingError when the tool leaves no file behind."""
        writer = DiskImageWriter(
            sample_bundle, temp_dir / "x.dmg", imager=SilentImager()
        )
        with pytest.raises(PackagingError, match="Failed to create"):
            writer.write()


class TestHdiutilImager:
    """Tests for the hdiutil command line."""

    def test_command(self, sample_bundle, temp_dir):
        """Test the hdiutil create invocation."""
        output = temp_dir / "LogRocket.dmg"
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="")
            HdiutilImager().create(sample_bundle, output, "Log Rocket")

        mock_run.assert_called_once()
        assert mock_run.call_args[0][0] == [
            "hdiutil",
            "create",
            "-volname",
            "Log Rocket",
            "-srcfolder",
            str(sample_bundle),
            "-ov",
            "-format",
            "UDZO",
            str(output),
        ]
        assert mock_run.call_args[1]["shell"] is False

    def test_failure_through_writer(self, sample_bundle, temp_dir):
        """Test a failing hdiutil becomes PackagingError."""
        error = subprocess.CalledProcessError(
            1, ["hdiutil"], output="", stderr="hdiutil: create failed - No space"
        )
        writer = DiskImageWriter(sample_bundle, temp_dir / "x.dmg")
        with patch("subprocess.run", side_effect=error):
            with pytest.raises(PackagingError, match="No space"):
                writer.write()
