import pytest

from scrapeflow.models import ExtractionConfig
from scrapeflow.urls import build_page_url, build_url


def test_query_param_keeps_existing_params():
    assert build_url("http://x.com/list?x=1", 3) == "http://x.com/list?x=1&page=3"


def test_query_param_overwrites_page_and_adds_label():
    url = build_url("https://shop.example/c?page=9", 2, label="shoes", page_param="page")
    assert url == "https://shop.example/c?page=2&label=shoes"


def test_query_param_custom_names():
    url = build_url("https://x.com/", 4, "b", page_param="p", label_param="cat")
    assert url == "https://x.com/?p=4&cat=b"


def test_path_strategy():
    assert build_url("https://x.com/list", 2, strategy="path") == "https://x.com/list/2"
    assert build_url("https://x.com/list", 2, "new", strategy="path") == "https://x.com/list/2/new"


def test_replace_strategy():
    base = "https://x.com/{label}/page-{page}.html"
    assert build_url(base, 5, "tv", strategy="replace") == "https://x.com/tv/page-5.html"
    # No label leaves the placeholder alone.
    assert build_url(base, 1, strategy="replace") == "https://x.com/{label}/page-1.html"


@pytest.mark.parametrize(
    "page,expected",
    [(1, "https://x.com/l?offset=0"), (3, "https://x.com/l?offset=40")],
)
def test_offset_strategy(page, expected):
    assert build_url("https://x.com/l", page, strategy="offset", items_per_page=20) == expected


def test_unknown_strategy_returns_base_url():
    assert build_url("https://x.com/l", 3, "a", strategy="infinite") == "https://x.com/l"


def test_malformed_url_falls_back_to_base_url():
    assert build_url("not a url", 2) == "not a url"


def test_build_page_url_reads_config():
    config = ExtractionConfig.parse(
        {
            "itemContainerSelector": ".item",
            "fields": {"title": "h2"},
            "pageParam": "pg",
            "labelParam": "section",
        }
    )
    assert build_page_url(config, "https://x.com/l", 2, "a") == "https://x.com/l?pg=2&section=a"


def test_repeated_query_keys_are_kept():
    url = build_url("http://x.com/list?tag=a&tag=b", 3)
    assert url == "http://x.com/list?tag=a&tag=b&page=3"


def test_existing_page_param_is_set_in_place():
    url = build_url("http://x.com/list?page=1&sort=new&page=7", 2)
    assert url == "http://x.com/list?page=2&sort=new"
