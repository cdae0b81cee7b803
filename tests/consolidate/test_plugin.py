"""
Tests for the MkDocs consolidate plugin.
"""

import os
import subprocess
import sys
from types import SimpleNamespace

import pytest
from bs4 import BeautifulSoup
from mkdocs.exceptions import PluginError

from plugins.consolidate.plugin import ConsolidatePlugin

PAGE = """<html>
<head>
<link rel="stylesheet" href="css/a.css">
<link rel="stylesheet" href="https://cdn.example/x.css">
<link rel="stylesheet" href="css/b.css">
<script src="js/head.js"></script>
</head>
<body>
<p>Hi</p>
<script src="js/app.js"></script>
<script>init();</script>
<script type="application/json">{"a": 1}</script>
</body>
</html>"""


def make_plugin(tmp_path, site_url="https://example.com/", **options):
    site_dir = tmp_path / "site"
    site_dir.mkdir(exist_ok=True)
    plugin = ConsolidatePlugin()
    settings = {"minify_css": False, "minify_js": False}
    settings.update(options)
    errors, warnings = plugin.load_config(settings)
    assert errors == []
    config = {"site_dir": str(site_dir), "site_url": site_url}
    plugin.on_config(config)
    return plugin, config


def write(tmp_path, rel, text):
    path = tmp_path / "site" / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf8")
    return path


def read_url(plugin, url):
    rel = url[len(plugin.settings.web_path):]
    with open(os.path.join(plugin.settings.base_path, rel), encoding="utf8") as f:
        return f.read()


class TestConsolidatePlugin:
    """Test for the configuration and page rewriting of the plugin."""

    def test_plugin_init(self):
        """Test: The plugin is initialized correctly."""
        plugin = ConsolidatePlugin()
        assert plugin.settings is None
        assert plugin.engine is None

    def test_on_config(self, tmp_path):
        """Test: Paths default to site_dir and the path of site_url."""
        plugin, _ = make_plugin(tmp_path, site_url="https://example.com/docs/")
        assert plugin.settings.base_path == str(tmp_path / "site")
        assert plugin.settings.web_path == "/docs/"
        assert plugin.settings.minify_path == str(tmp_path / "site" / "minify")
        assert (tmp_path / "site" / "minify").is_dir()

    def test_invalid_minify_path(self, tmp_path):
        """Test: A minify directory outside the site is a build error."""
        with pytest.raises(PluginError):
            make_plugin(tmp_path, minify_path="../outside")

    def test_consolidate_page(self, tmp_path):
        """Test: Local assets are replaced by bundles, everything else stays put."""
        write(tmp_path, "css/a.css", ".a{}")
        write(tmp_path, "css/b.css", ".b{}")
        write(tmp_path, "js/head.js", "head();")
        write(tmp_path, "js/app.js", "app();")
        plugin, _ = make_plugin(tmp_path)

        result = plugin.consolidate_page(PAGE, str(tmp_path / "site"))
        soup = BeautifulSoup(result, "html.parser")

        hrefs = [link["href"] for link in soup.find_all("link")]
        assert len(hrefs) == 3
        assert hrefs[0].startswith("/minify/") and hrefs[2].startswith("/minify/")
        assert hrefs[1] == "https://cdn.example/x.css"
        assert read_url(plugin, hrefs[0]) == ".a{}"
        assert read_url(plugin, hrefs[2]) == ".b{}"

        head_scripts = soup.head.find_all("script")
        assert len(head_scripts) == 1
        assert read_url(plugin, head_scripts[0]["src"]) == "head();"

        body_scripts = soup.body.find_all("script")
        assert len(body_scripts) == 2
        assert read_url(plugin, body_scripts[0]["src"]) == "app();\n;\ninit();"
        assert body_scripts[1]["type"] == "application/json"
        assert soup.body.p.get_text() == "Hi"

    def test_scripts_separated_by_markup_stay_apart(self, tmp_path):
        """Test: A script written after an element still runs after it."""
        write(tmp_path, "js/app.js", "document.getElementById('x');")
        write(tmp_path, "js/more.js", "more();")
        plugin, _ = make_plugin(tmp_path)
        html = (
            "<html><head></head><body>"
            "<script>var early=1;</script>"
            '<div id="x"></div>'
            '<script src="js/app.js"></script>\n<!-- tail -->\n<script src="js/more.js"></script>'
            "</body></html>"
        )

        soup = BeautifulSoup(plugin.consolidate_page(html, str(tmp_path / "site")), "html.parser")
        order = [tag.name for tag in soup.body.find_all(["script", "div"])]
        assert order == ["script", "div", "script"]

        first, second = soup.body.find_all("script")
        assert read_url(plugin, first["src"]) == "var early=1;"
        assert read_url(plugin, second["src"]) == "document.getElementById('x');\n;\nmore();"

    def test_inline_style_urls_follow_the_page(self, tmp_path):
        """Test: Relative urls of a <style> block are rewritten from the page directory."""
        plugin, config = make_plugin(tmp_path)
        page = SimpleNamespace(file=SimpleNamespace(dest_path="guide/index.html"), url="guide/")
        html = "<html><head><style>.a{background:url(img/x.png)}</style></head><body></body></html>"

        result = plugin.on_post_page(html, page=page, config=config)

        link = BeautifulSoup(result, "html.parser").find("link")
        assert read_url(plugin, link["href"]) == ".a{background:url(../guide/img/x.png)}"

    def test_duplicate_tags_are_removed(self, tmp_path):
        """Test: A stylesheet linked twice ends up once in the bundle."""
        write(tmp_path, "css/a.css", ".a{}")
        plugin, _ = make_plugin(tmp_path)
        html = '<html><head><link rel="stylesheet" href="css/a.css"><link rel="stylesheet" href="css/a.css"></head></html>'

        soup = BeautifulSoup(plugin.consolidate_page(html, str(tmp_path / "site")), "html.parser")
        (link,) = soup.find_all("link")
        assert read_url(plugin, link["href"]) == ".a{}"

    def test_integrity_tags_untouched(self, tmp_path):
        """Test: Assets pinned with subresource integrity are not bundled."""
        write(tmp_path, "css/a.css", ".a{}")
        plugin, _ = make_plugin(tmp_path)
        html = (
            '<html><head><link rel="stylesheet" href="css/a.css" '
            'integrity="sha384-abc" crossorigin="anonymous"></head></html>'
        )
        assert plugin.consolidate_page(html, str(tmp_path / "site")) == html

    def test_on_post_page_uses_page_directory(self, tmp_path):
        """Test: References are resolved from the page's output directory."""
        write(tmp_path, "css/a.css", ".a{background:url(img/x.png)}")
        plugin, config = make_plugin(tmp_path, site_url="https://example.com/docs/")
        page = SimpleNamespace(file=SimpleNamespace(dest_path="guide/index.html"), url="guide/")
        html = '<html><head><link rel="stylesheet" href="../css/a.css"></head><body></body></html>'

        result = plugin.on_post_page(html, page=page, config=config)

        link = BeautifulSoup(result, "html.parser").find("link")
        assert link["href"].startswith("/docs/minify/")
        assert read_url(plugin, link["href"]) == ".a{background:url(../css/img/x.png)}"

    def test_disabled(self, tmp_path):
        """Test: With enable_minify off the page is returned as rendered."""
        write(tmp_path, "css/a.css", ".a{}")
        plugin, config = make_plugin(tmp_path, enable_minify=False)
        page = SimpleNamespace(file=SimpleNamespace(dest_path="index.html"), url="")

        assert plugin.on_post_page(PAGE, page=page, config=config) == PAGE

    def test_minify_html(self, tmp_path):
        """Test: HTML minification works."""
        plugin, config = make_plugin(tmp_path, enable_minify=False, minify_html=True)
        page = SimpleNamespace(file=SimpleNamespace(dest_path="index.html"), url="")

        result = plugin.on_post_page("<html><body><p>Hello   World</p></body></html>", page=page, config=config)
        assert "<p>Hello World</p>" in result

    def test_mkdocs_build(self, tmp_path):
        """Test: A full MkDocs build writes bundles and links them."""
        docs = tmp_path / "docs"
        (docs / "css").mkdir(parents=True)
        (docs / "index.md").write_text("# Test\n\nHello.", encoding="utf8")
        (docs / "css" / "extra.css").write_text(".extra {\n  color: blue;\n}\n", encoding="utf8")

        config_content = """
site_name: Test Site
theme:
  name: mkdocs
plugins:
  - consolidate:
      minify_css: true
      minify_js: true
extra_css:
  - css/extra.css
"""
        config_file = tmp_path / "mkdocs.yml"
        config_file.write_text(config_content, encoding="utf8")
        site_dir = tmp_path / "site"

        try:
            subprocess.check_call(
                [
                    sys.executable,
                    "-m",
                    "mkdocs",
                    "build",
                    "-q",
                    "-f",
                    str(config_file),
                    "-d",
                    str(site_dir),
                ],
                cwd=str(tmp_path),
            )
        except subprocess.CalledProcessError:
            pytest.skip("MkDocs build failed in this environment")

        bundles = os.listdir(site_dir / "minify")
        assert any(name.endswith(".css") for name in bundles)

        index_html = (site_dir / "index.html").read_text(encoding="utf8")
        assert "/minify/" in index_html
        assert 'href="css/extra.css"' not in index_html
