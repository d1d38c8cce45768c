import random

import pytest

import site_mirror as sm


# ── Resolution ─────────────────────────────────────────────────


def test_resolve_relative_against_base():
    assert sm.resolve_url("../img/a.png", "http://a.test/blog/post.html") == (
        "http://a.test/img/a.png"
    )
    assert sm.resolve_url("p", "http://a.test/docs/") == "http://a.test/docs/p"


def test_resolve_strips_fragment_and_keeps_query():
    assert sm.resolve_url("/about?x=1#team", "http://a.test/") == (
        "http://a.test/about?x=1"
    )


def test_resolve_protocol_relative():
    assert sm.resolve_url("//cdn.test/lib.js", "https://a.test/") == (
        "https://cdn.test/lib.js"
    )


@pytest.mark.parametrize(
    "ref",
    ["mailto:x@a.test", "javascript:void(0)", "data:image/png;base64,AA", "#top",
     "tel:123", "ftp://a.test/file"],
)
def test_resolve_rejects_non_http(ref):
    with pytest.raises(sm.UnsupportedSchemeError):
        sm.resolve_url(ref, "http://a.test/")


@pytest.mark.parametrize("ref", ["", "   ", None, "http://[::1"])
def test_resolve_rejects_malformed(ref):
    with pytest.raises(sm.MalformedUrlError):
        sm.resolve_url(ref, "http://a.test/")


def test_same_origin_compares_hostname_only():
    assert sm.is_same_origin("https://A.test:8443/x", "a.test")
    assert sm.is_same_origin("http://a.test/", "a.test")
    assert not sm.is_same_origin("http://b.test/", "a.test")
    assert not sm.is_same_origin("http://sub.a.test/", "a.test")
    assert not sm.is_same_origin("not a url", "a.test")


# ── Path mapping ───────────────────────────────────────────────


@pytest.mark.parametrize(
    "url, expected",
    [
        ("http://a.test/", "index.html"),
        ("http://a.test", "index.html"),
        ("http://a.test/about", "about.html"),
        ("http://a.test/docs/", "docs/index.html"),
        ("http://a.test/css/site.css", "css/site.css"),
        ("http://a.test/v1.2/about", "v1.2/about.html"),
        ("http://a.test/page?id=1&x=2", "page_id%3D1%26x%3D2.html"),
        ("http://a.test/img/a.png?v=3", "img/a_v%3D3.png"),
        ("http://b.test/x", "_external/b.test/x.html"),
        ("http://b.test/", "_external/b.test/index.html"),
        ("https://cdn.test/lib/app.js", "_external/cdn.test/lib/app.js"),
    ],
)
def test_map_path(url, expected):
    assert sm.map_path(url, "a.test") == expected


def test_map_path_query_variants_do_not_collide():
    a = sm.map_path("http://a.test/list?page=1", "a.test")
    b = sm.map_path("http://a.test/list?page=2", "a.test")
    c = sm.map_path("http://a.test/list", "a.test")
    assert len({a, b, c}) == 3


def test_map_path_is_order_independent():
    urls = [
        "http://a.test/",
        "http://a.test/a/b/",
        "http://a.test/x.css?v=2",
        "http://b.test/font.woff2",
        "http://a.test/about",
    ]
    first = {u: sm.map_path(u, "a.test") for u in urls}
    shuffled = urls[:]
    random.Random(7).shuffle(shuffled)
    second = {u: sm.map_path(u, "a.test") for u in shuffled}
    assert first == second


def test_map_path_malformed_gets_unique_fallback():
    a = sm.map_path("not a url", "a.test")
    b = sm.map_path("http://[::1", "a.test")
    assert a.startswith("unknown_")
    assert b.startswith("unknown_")
    assert a != b


def test_map_path_has_no_leading_separator():
    assert not sm.map_path("http://a.test/deep/path/file.js", "a.test").startswith("/")


@pytest.mark.parametrize(
    "ref, expected",
    [
        ("http://a.test/a/../b", "http://a.test/b"),
        ("http://a.test/../../evil.png", "http://a.test/evil.png"),
        ("http://a.test/x/./y/", "http://a.test/x/y/"),
        ("http://a.test/a/..?q=1", "http://a.test/?q=1"),
        ("../../../up.css", "http://a.test/up.css"),
    ],
)
def test_resolve_removes_dot_segments(ref, expected):
    assert sm.resolve_url(ref, "http://a.test/") == expected


@pytest.mark.parametrize(
    "url, expected",
    [
        ("http://a.test/../../evil.png", "evil.png"),
        ("http://a.test/a/./../b", "a/b.html"),
        ("http://../x.js", "_external/x.js"),
    ],
)
def test_map_path_never_leaves_the_output_tree(url, expected):
    path = sm.map_path(url, "a.test")
    assert path == expected
    assert ".." not in path.split("/")
