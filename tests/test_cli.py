"""Tests for the command-line interface."""

import plistlib
import subprocess
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

import macpackager
from macpackager import main


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture(autouse=True)
def no_version_env(monkeypatch):
    monkeypatch.delenv("BUNDLE_VERSION", raising=False)


@pytest.fixture
def project(temp_dir, monkeypatch):
    """Lay out a project the way the default config expects it."""
    icons = temp_dir / "src" / "icons"
    icons.mkdir(parents=True)
    Image.new("RGBA", (64, 64), (0, 0, 0, 255)).save(icons / "logo.png")
    release = temp_dir / "target" / "release"
    release.mkdir(parents=True)
    exe = release / "log-rocket"
    exe.write_bytes(b"#!/bin/bash\necho hello")
    exe.chmod(0o755)
    monkeypatch.chdir(temp_dir)
    return temp_dir


class TestCLIHelp:
    """Tests for help output via python -m."""

    def test_help(self):
        result = subprocess.run(
            [sys.executable, "-m", "macpackager", "--help"],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0
        for command in ("build", "icons", "plist", "dmg"):
            assert command in result.stdout

    def test_build_help(self):
        result = subprocess.run(
            [sys.executable, "-m", "macpackager", "build", "--help"],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0
        assert "--icon" in result.stdout
        assert "--backend" in result.stdout
        assert "--no-dmg" in result.stdout

    def test_requires_command(self):
        result = subprocess.run(
            [sys.executable, "-m", "macpackager"],
            capture_output=True,
            text=True,
        )
        assert result.returncode != 0
        assert "required" in result.stderr.lower()


class TestCLIBuild:
    """Tests for the 'build' subcommand."""

    def test_build_defaults(self, project):
        """Test a build using only the default layout."""
        main(["build", "--backend", "portable", "--no-dmg", "--no-color"])

        bundle = project / "Log Rocket.app"
        assert (bundle / "Contents" / "MacOS" / "log-rocket").exists()
        assert (bundle / "Contents" / "Resources" / "AppIcon.icns").exists()
        info = plistlib.loads(
            (bundle / "Contents" / "Info.plist").read_bytes()
        )
        assert info["CFBundleIdentifier"] == "com.jose.log-rocket"

    def test_build_overrides(self, project):
        """Test that CLI options override defaults."""
        main(
            [
                "build",
                str(project / "target" / "release" / "log-rocket"),
                "--backend",
                "portable",
                "--no-dmg",
                "-o",
                "dist",
                "--name",
                "Rocket",
                "--version",
                "2.0",
                "--id",
                "org.example.rocket",
            ]
        )
        info = plistlib.loads(
            (project / "dist" / "Rocket.app" / "Contents" / "Info.plist")
            .read_bytes()
        )
        assert info["CFBundleName"] == "Rocket"
        assert info["CFBundleShortVersionString"] == "2.0"
        assert info["CFBundleIdentifier"] == "org.example.rocket"

    def test_build_config_file(self, project):
        """Test values from .macpackager.toml are used."""
        (project / ".macpackager.toml").write_text(
            '[package]\nversion = "3.1"\n\n[build]\noutput_dir = "out"\n'
        )
        main(["build", "--backend", "portable", "--no-dmg"])
        info = plistlib.loads(
            (project / "out" / "Log Rocket.app" / "Contents" / "Info.plist")
            .read_bytes()
        )
        assert info["CFBundleShortVersionString"] == "3.1"

    def test_build_with_dmg(self, project):
        """Test the disk image step invokes hdiutil."""

        def fake_run(command, **kwargs):
            if command[0] == "hdiutil":
                Path(command[-1]).write_bytes(b"dmg")
            return subprocess.CompletedProcess(command, 0, "", "")

        with patch.object(macpackager.subprocess, "run", side_effect=fake_run):
            main(["build", "--backend", "portable"])
        assert (project / "LogRocket.dmg").read_bytes() == b"dmg"

    def test_missing_icon_exits(self, project):
        """Test a config error exits with status 1."""
        with pytest.raises(SystemExit) as exc:
            main(["build", "--icon", "nope.png", "--no-dmg"])
        assert exc.value.code == 1

    def test_missing_executable_exits(self, project):
        """Test a missing executable exits with status 1."""
        with pytest.raises(SystemExit) as exc:
            main(["build", "missing-binary", "--backend", "portable", "--no-dmg"])
        assert exc.value.code == 1
        assert not (project / "Log Rocket.app").exists()

    def test_unexpected_error_exits(self, project):
        """Test an unexpected exception exits with status 1."""
        with patch.object(
            macpackager.Pipeline, "run", side_effect=RuntimeError("boom")
        ):
            with pytest.raises(SystemExit) as exc:
                main(["build", "--backend", "portable", "--no-dmg"])
        assert exc.value.code == 1


class TestCLIOtherCommands:
    """Tests for the 'icons', 'plist' and 'dmg' subcommands."""

    def test_icons(self, project):
        main(
            [
                "icons",
                "src/icons/logo.png",
                "-o",
                "Custom.icns",
                "--backend",
                "portable",
            ]
        )
        assert (project / "Custom.icns").read_bytes()[:4] == b"icns"

    def test_plist(self, temp_dir, monkeypatch, capsys):
        monkeypatch.chdir(temp_dir)
        main(["plist", "--name", "Other", "--id", "org.example.other"])
        info = plistlib.loads(capsys.readouterr().out.encode("utf-8"))
        assert info["CFBundleName"] == "Other"
        assert info["CFBundleIdentifier"] == "org.example.other"

    def test_dmg_missing_bundle(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        with pytest.raises(SystemExit) as exc:
            main(["dmg", "Missing.app"])
        assert exc.value.code == 1
