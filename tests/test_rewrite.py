import site_mirror as sm


def rewrite(text, local_path="index.html", downloaded=()):
    return sm.rewrite_text(text, local_path, "a.test", downloaded)


def record(path, content, content_type="text/html; charset=utf-8"):
    is_text = isinstance(content, str)
    size = len(content.encode("utf-8")) if is_text else len(content)
    return sm.ResourceRecord(
        source_url="http://a.test/" + path,
        local_path=path,
        content_type=content_type,
        size=size,
        is_text=is_text,
        content=content,
    )


def test_same_origin_reference_is_relative_to_document():
    out = rewrite('<img src="http://a.test/i.png">', "blog/post.html")
    assert out == '<img src="../i.png">'


def test_root_document_has_no_prefix():
    assert rewrite("<a href='http://a.test/about'>") == "<a href='about.html'>"


def test_uncaptured_same_origin_page_is_still_rewritten():
    out = rewrite('<a href="http://a.test/missing">x</a>')
    assert out == '<a href="missing.html">x</a>'


def test_external_reference_only_when_captured():
    page = '<script src="https://cdn.test/lib.js"></script>'
    assert rewrite(page) == page
    captured = rewrite(page, downloaded={"https://cdn.test/lib.js"})
    assert captured == '<script src="_external/cdn.test/lib.js"></script>'


def test_relative_references_are_left_alone():
    page = '<a href="/about">a</a><img src="img/x.png">'
    assert rewrite(page) == page


def test_css_url_rewrite():
    css = (
        'body { background: url("http://a.test/img/bg.png") }\n'
        ".x { b: url(http://a.test/y.png) }"
    )
    out = rewrite(css, "css/site.css")
    assert 'url("../img/bg.png")' in out
    assert "url(../y.png)" in out


def test_fragment_is_kept():
    out = rewrite('<a href="http://a.test/about#team">')
    assert out == '<a href="about.html#team">'


def test_entity_encoded_query():
    out = rewrite('<a href="http://a.test/list?a=1&amp;b=2">')
    assert out == '<a href="list_a%3D1%26b%3D2.html">'


def test_srcset_candidates():
    out = rewrite('<img srcset="http://a.test/a.png 1x, http://a.test/b.png 2x">')
    assert out == '<img srcset="a.png 1x, b.png 2x">'
    mixed = rewrite('<img srcset="/r.png 1x, http://a.test/b.png 2x">', "p/q.html")
    assert mixed == '<img srcset="/r.png 1x, ../b.png 2x">'


def test_relative_srcset_untouched():
    page = '<img srcset="a.png  1x,b.png 2x">'
    assert rewrite(page) == page


def test_second_pass_is_a_no_op():
    page = (
        '<link rel="stylesheet" href="http://a.test/css/site.css">'
        '<img src="http://a.test/i.png" srcset="http://a.test/i2.png 2x">'
        '<div style="background:url(http://a.test/bg.jpg)"></div>'
        '<a href="http://b.test/">out</a>'
    )
    once = rewrite(page, "docs/index.html")
    assert rewrite(once, "docs/index.html") == once


def test_rewrite_resources_skips_binary_and_recomputes_size():
    resources = {
        "index.html": record(
            "index.html", '<p>café</p><img src="http://a.test/img/a.png">'
        ),
        "img/a.png": record("img/a.png", b"http://a.test/img/a.png", "image/png"),
        "about.html": record("about.html", "<p>nothing absolute</p>"),
    }
    binary_before = resources["img/a.png"]
    changed = sm.rewrite_resources(resources, "a.test", {"http://a.test/img/a.png"})

    assert changed == 1
    page = resources["index.html"]
    assert page.content == '<p>café</p><img src="img/a.png">'
    assert page.size == len(page.content.encode("utf-8"))
    assert resources["img/a.png"] is binary_before
    assert resources["about.html"].content == "<p>nothing absolute</p>"
