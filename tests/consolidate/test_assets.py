"""
Tests for asset registration, de-duplication and scoped capture.
"""

import os

import pytest

from plugins.consolidate.assets import (
    CSS,
    JS,
    POS_END,
    POS_HEAD,
    POS_READY,
    AssetCollector,
    AssetItem,
    strip_tag,
)
from plugins.consolidate.paths import PathResolver


@pytest.fixture
def collector(tmp_path):
    return AssetCollector(PathResolver(str(tmp_path), "/"))


class TestAssetCollector:
    """Test for ordered, first-wins registration."""

    def test_first_registration_wins(self, collector):
        """Test: A repeated key is ignored and the first item kept."""
        assert collector.register_css(".a{}", key="theme") is not None
        assert collector.register_css(".b{}", key="theme") is None

        items = collector.items(CSS)
        assert [i.content for i in items] == [".a{}"]

    def test_derived_keys(self, collector):
        """Test: Without a key, equal content or equal files collapse."""
        collector.register_js("init();", POS_HEAD)
        collector.register_js("init();", POS_HEAD)
        collector.register_js_file("js/app.js")
        collector.register_js_file("js/app.js")
        assert len(collector.items(JS)) == 2

    def test_file_registration_resolves_paths(self, collector, tmp_path):
        """Test: File references carry both filesystem path and public URL."""
        item = collector.register_css_file("css/a.css", {"media": "screen"})
        assert item.kind == "file"
        assert item.source_path == os.path.join(str(tmp_path), "css", "a.css")
        assert item.source_url == "/css/a.css"
        assert item.options == {"media": "screen"}

    def test_external_and_unresolvable_files(self, collector):
        """Test: External references keep their URL; escaping ones are never bundled."""
        external = collector.register_css_file("https://cdn.example/x.css")
        assert external.source_path is None
        assert external.source_url == "https://cdn.example/x.css"

        outside = collector.register_css_file("../outside.css")
        assert outside.source_path is None
        assert outside.minify is False

    def test_js_grouped_by_position(self, collector):
        """Test: JS items are grouped by position, registration order kept inside a group."""
        collector.register_js_file("js/end1.js", POS_END)
        collector.register_js("head();", POS_HEAD)
        collector.register_js("ready();", POS_READY)
        collector.register_js_file("js/end2.js", POS_END)

        items = collector.items(JS)
        assert [i.position for i in items] == [POS_HEAD, POS_END, POS_END, POS_READY]
        assert items[1].source_url == "/js/end1.js"
        assert items[2].source_url == "/js/end2.js"

    def test_css_keeps_registration_order(self, collector):
        """Test: CSS is never regrouped."""
        collector.register_css_file("css/a.css", {"media": "print"})
        collector.register_css(".inline{}")
        collector.register_css_file("css/b.css", {"media": "print"})
        assert [i.source_url or i.content for i in collector.items(CSS)] == ["/css/a.css", ".inline{}", "/css/b.css"]

    def test_excluded_media(self, tmp_path):
        """Test: Stylesheets for excluded media are emitted as given."""
        collector = AssetCollector(PathResolver(str(tmp_path), "/"), exclude_media=["Print"])
        print_css = collector.register_css_file("css/p.css", {"media": "print"})
        screen_css = collector.register_css_file("css/s.css", {"media": "screen"})
        assert print_css.minify is False
        assert screen_css.minify is True

    def test_dedup_key(self):
        """Test: Explicit keys win over derived ones."""
        assert AssetItem.inline("a{}", key="k").dedup_key() == "k"
        assert AssetItem.inline("a{}").dedup_key() == AssetItem.inline("a{}", POS_END).dedup_key()
        assert AssetItem.file("/css/a.css").dedup_key() == "file:/css/a.css"


class TestCapture:
    """Test for begin/end capture and tag stripping."""

    def test_capture_js_context_manager(self, collector):
        """Test: Captured markup is stripped and registered with position and key."""
        with collector.capture_js(position=POS_HEAD, key="menu") as buf:
            buf.write('<script type="text/javascript">\ninitMenu();\n</script>')

        (item,) = collector.items(JS)
        assert item.content == "initMenu();"
        assert item.position == POS_HEAD
        assert item.key == "menu"

    def test_begin_end_css(self, collector):
        """Test: end_css returns the inner text and keeps the options."""
        buf = collector.begin_css({"media": "screen"}, key="page")
        buf.write("<style>\n.page{color:red}\n</style>")
        assert collector.end_css() == ".page{color:red}"

        (item,) = collector.items(CSS)
        assert item.options == {"media": "screen"}
        assert item.key == "page"

    def test_nested_captures(self, collector):
        """Test: Captures form a stack."""
        outer = collector.begin_css()
        outer.write("<style>.outer{}</style>")
        inner = collector.begin_js(POS_END)
        inner.write("<script>inner();</script>")
        assert collector.end_js() == "inner();"
        assert collector.end_css() == ".outer{}"

    def test_mismatched_end(self, collector):
        """Test: Ending the wrong capture type is an error."""
        collector.begin_css()
        with pytest.raises(RuntimeError):
            collector.end_js()

    def test_failed_capture_registers_nothing(self, collector):
        """Test: An exception inside the block discards the capture."""
        with pytest.raises(ValueError):
            with collector.capture_css() as buf:
                buf.write("<style>.x{}</style>")
                raise ValueError("boom")

        assert collector.items(CSS) == []
        with pytest.raises(RuntimeError):
            collector.end_css()

    @pytest.mark.parametrize(
        "markup, tag, expected",
        [
            ('<script type="text/javascript">\nvar a = "<b>";\n</script>', "script", 'var a = "<b>";'),
            ("<SCRIPT>x()</SCRIPT>", "script", "x()"),
            ('<style media="screen">a{}</style >', "style", "a{}"),
            ("  plain();  ", "script", "plain();"),
            ("<script>unclosed();", "script", "unclosed();"),
            ("<scripts>x</scripts>", "script", "<scripts>x</scripts>"),
        ],
    )
    def test_strip_tag(self, markup, tag, expected):
        """Test: Tag stripping is lenient and tolerates attributes."""
        assert strip_tag(markup, tag) == expected
