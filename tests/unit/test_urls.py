import pytest

from services.urls import extract_domain, normalize_url


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://www.example.com/path?q=1", "example.com"),
        ("http://blog.example.co.uk/post", "example.co.uk"),
        ("example.org", "example.org"),
        ("https://kidsandus.es", "kidsandus.es"),
    ],
)
def test_extract_domain(url, expected):
    assert extract_domain(url) == expected


def test_extract_domain_with_subdomain():
    assert extract_domain("https://www.blog.example.com/x", with_subdomain=True) == "blog.example.com"


def test_extract_domain_unwraps_google_translate():
    url = "https://translate.google.com/translate?sl=auto&u=https://www.foo.de/seite"

    assert extract_domain(url) == "foo.de"
    assert extract_domain(url, resolve_google_translate=False) == "google.com"


def test_extract_domain_empty():
    assert extract_domain("") == ""


def test_normalize_url_drops_fragment_and_query():
    assert normalize_url("https://A.com/Page?x=1#frag") == "https://a.com/Page"


def test_normalize_url_can_keep_query():
    assert normalize_url("https://a.com/page?x=1#frag", remove_params=False) == "https://a.com/page?x=1"


def test_normalize_url_adds_root_path():
    assert normalize_url("https://a.com") == "https://a.com/"


def test_normalize_url_leaves_relative_urls_alone():
    assert normalize_url("/just/a/path#x") == "/just/a/path#x"
