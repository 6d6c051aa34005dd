import page_mirror as pm
from conftest import FakeSession


def make_store(layout, root, session=None, remote=False):
    context = pm.CrawlContext(str(root), is_remote=remote)
    return pm.ResourceStore(
        context, layout, pm.Settings(), pm.Deadline(60), pm.Statistics(),
        session if session is not None else FakeSession(),
    )


def test_font_reference_rewritten_relative_to_asset_bucket(layout, site):
    root = site(
        {
            "css/style.css": "@font-face{src:url('../fonts/f.woff')}\n"
            "body{background: url(\"../img/bg.png\")}",
            "fonts/f.woff": b"wOFF",
            "img/bg.png": b"PNG",
        }
    )
    store = make_store(layout, root)

    assert store.acquire("css/style.css", str(root)) == "assets/style.css"

    css = (layout.asset_dir / "style.css").read_text()
    assert "url('../fonts/f.woff')" in css
    assert "url('bg.png')" in css
    assert (layout.font_dir / "f.woff").read_bytes() == b"wOFF"
    assert (layout.asset_dir / "bg.png").exists()
    assert store.stats.files_written == 3


def test_stylesheet_resolves_against_its_own_location(layout):
    session = FakeSession(
        {
            "https://ex.com/static/css/main.css": (200, b"h1{background:url(img/h.png)}"),
            "https://ex.com/static/css/img/h.png": (200, b"H"),
        }
    )
    store = make_store(layout, "https://ex.com/", session, remote=True)

    store.acquire("static/css/main.css", "https://ex.com/")
    assert "https://ex.com/static/css/img/h.png" in session.calls
    assert (layout.asset_dir / "main.css").read_text() == "h1{background:url('h.png')}"


def test_unresolvable_and_inline_payloads_are_left_untouched(layout, site):
    original = (
        "a{background:url(data:image/png;base64,AAAA)}"
        "b{mask:url(#clip)}"
        "c{background:url( 'missing.png' )}"
    )
    root = site({"s.css": original})
    store = make_store(layout, root)

    out = store.stylesheets.process(original.encode(), str(root), layout.asset_dir)
    assert out.decode() == original
    assert store.stats.resources_failed == 1


def test_non_utf8_bytes_survive_rewriting(layout, site):
    root = site({"i.png": b"I"})
    data = b"/* caf\xe9 */ p{background:url(i.png)}"
    store = make_store(layout, root)

    out = store.stylesheets.process(data, str(root), layout.asset_dir)
    assert out == b"/* caf\xe9 */ p{background:url('i.png')}"


def test_bare_import_is_not_followed(layout, site):
    root = site({"base.css": "p{}"})
    store = make_store(layout, root)
    data = b'@import "base.css";'

    assert store.stylesheets.process(data, str(root), layout.asset_dir) == data
    assert not (layout.asset_dir / "base.css").exists()
