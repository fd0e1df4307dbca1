"""Unit tests for Info.plist rendering."""

import plistlib
from pathlib import Path

from macpackager import (
    DocumentType,
    PackageConfig,
    Role,
    render_info_plist,
)

EXPECTED_KEYS = {
    "CFBundleExecutable",
    "CFBundleIdentifier",
    "CFBundleName",
    "CFBundleIconFile",
    "CFBundleShortVersionString",
    "CFBundleInfoDictionaryVersion",
    "CFBundlePackageType",
    "LSMinimumSystemVersion",
    "NSHighResolutionCapable",
    "CFBundleDocumentTypes",
}


def make_config(**kwargs):
    values = dict(
        app_name="Log Rocket",
        executable_name="log-rocket",
        bundle_identifier="com.jose.log-rocket",
        version="0.1.0",
        icon_source=Path("logo.png"),
        min_system_version="10.13",
        document_types=(
            DocumentType(
                extensions=("log", "txt"),
                name="Log File",
                role=Role.VIEWER,
                content_types=("public.plain-text", "public.log"),
            ),
        ),
    )
    values.update(kwargs)
    return PackageConfig(**values)


def parse(config):
    return plistlib.loads(render_info_plist(config).encode("utf-8"))


class TestRenderInfoPlist:
    """Tests for render_info_plist()."""

    def test_key_set(self):
        """Test that exactly the fixed key set is rendered."""
        assert set(parse(make_config())) == EXPECTED_KEYS

    def test_values(self):
        """Test that config values are substituted."""
        info = parse(make_config())
        assert info["CFBundleExecutable"] == "log-rocket"
        assert info["CFBundleIdentifier"] == "com.jose.log-rocket"
        assert info["CFBundleName"] == "Log Rocket"
        assert info["CFBundleShortVersionString"] == "0.1.0"
        assert info["LSMinimumSystemVersion"] == "10.13"

    def test_constants(self):
        """Test the fixed descriptor values."""
        info = parse(make_config())
        assert info["CFBundleInfoDictionaryVersion"] == "6.0"
        assert info["CFBundlePackageType"] == "APPL"
        assert info["NSHighResolutionCapable"] is True

    def test_icon_file_has_no_extension(self):
        """Test CFBundleIconFile names the icon without .icns."""
        assert parse(make_config())["CFBundleIconFile"] == "AppIcon"

    def test_document_types(self):
        """Test document type associations are rendered in order."""
        config = make_config(
            document_types=(
                DocumentType(
                    extensions=("log", "txt"),
                    name="Log File",
                    content_types=("public.plain-text", "public.log"),
                ),
                DocumentType(
                    extensions=("json",),
                    name="JSON Log",
                    role=Role.EDITOR,
                    rank="Alternate",
                ),
            )
        )
        types = parse(config)["CFBundleDocumentTypes"]
        assert types == [
            {
                "CFBundleTypeExtensions": ["log", "txt"],
                "CFBundleTypeName": "Log File",
                "CFBundleTypeRole": "Viewer",
                "LSHandlerRank": "Default",
                "LSItemContentTypes": ["public.plain-text", "public.log"],
            },
            {
                "CFBundleTypeExtensions": ["json"],
                "CFBundleTypeName": "JSON Log",
                "CFBundleTypeRole": "Editor",
                "LSHandlerRank": "Alternate",
                "LSItemContentTypes": [],
            },
        ]

    def test_no_document_types(self):
        """Test an empty association list is still a valid plist."""
        assert parse(make_config(document_types=()))["CFBundleDocumentTypes"] == []

    def test_special_characters_escaped(self):
        """Test that XML special characters survive rendering."""
        info = parse(make_config(app_name="Logs & <Traces>"))
        assert info["CFBundleName"] == "Logs & <Traces>"

    def test_deterministic(self):
        """Test equal configs render byte-identical documents."""
        assert render_info_plist(make_config()) == render_info_plist(
            make_config()
        )
