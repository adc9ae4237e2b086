import pytest

from metrics.visibility import (
    aggregate_brand_visibility,
    aggregate_cited_domains,
    annotate_brand_visibility,
    extract_cited_urls,
)
from models.domain import UrlStats, VisibilityRecord
from models.schemas import FlaggedBrand, SearchResult, Source


def make_brand(short_name: str, domain: str, is_competitor: bool = False) -> FlaggedBrand:
    return FlaggedBrand(name=short_name, short_name=short_name, domain=domain, is_competitor=is_competitor)


EF = make_brand("EF", "ef.com")
BABBEL = make_brand("Babbel", "babbel.com", is_competitor=True)


def test_annotate_finds_mentions_and_sources():
    result = SearchResult(
        answer="EF is great. EF again",
        sources=[
            Source(url="https://ef.com/a#top", domain="ef.com", cited=True),
            Source(url="https://www.ef.com/b?x=1", cited=False),
            Source(url="https://other.com/c", domain="other.com", cited=True),
        ],
    )

    [records] = annotate_brand_visibility([result], [EF, BABBEL])

    ef = records["EF"]
    assert ef.in_content is True
    assert ef.indices == [0, 13]
    assert ef.in_sources is True
    assert ef.citations == ["https://ef.com/a"]
    assert ef.references == ["https://www.ef.com/b"]

    babbel = records["Babbel"]
    assert babbel.in_content is False
    assert babbel.in_sources is False
    assert babbel.indices == []


def test_apostrophe_brand_counts_as_answer_mention():
    mcdonalds = make_brand("McDonald's", "mcdonalds.com")
    result = SearchResult(answer="The best burgers are at McDonald's downtown.")

    annotated = annotate_brand_visibility([result], [mcdonalds])
    [stats] = aggregate_brand_visibility(annotated, [mcdonalds])

    assert annotated[0]["McDonald's"].in_content is True
    assert annotated[0]["McDonald's"].indices == [24]
    assert stats.answer == 1


def test_annotate_empty_answer():
    [records] = annotate_brand_visibility([SearchResult.empty()], [EF])

    assert records["EF"] == VisibilityRecord(name="EF")


def test_unique_citations_dedupe_normalized_urls_across_results():
    annotated = [
        {"EF": VisibilityRecord(name="EF", citations=["https://a.com/page?x=1#frag"])},
        {"EF": VisibilityRecord(name="EF", citations=["https://a.com/page?x=2#frag2"])},
    ]

    [stats] = aggregate_brand_visibility(annotated, [EF])

    assert stats.citations == 2
    assert stats.unique_citations == 1
    assert stats.references == 2
    assert stats.unique_references == 1


def test_answer_counts_once_per_result():
    annotated = [
        {"EF": VisibilityRecord(name="EF", in_content=True, indices=[0, 10, 20])},
        {"EF": VisibilityRecord(name="EF", in_content=False)},
        {"EF": VisibilityRecord(name="EF", in_content=True, indices=[5])},
    ]

    [stats] = aggregate_brand_visibility(annotated, [EF])

    assert stats.answer == 2


def test_references_are_counted_separately_from_citations():
    annotated = [
        {
            "EF": VisibilityRecord(
                name="EF",
                citations=["https://ef.com/a"],
                references=["https://ef.com/a", "https://EF.com/b", "https://ef.com/b"],
            )
        }
    ]

    [stats] = aggregate_brand_visibility(annotated, [EF])

    assert stats.citations == 1
    assert stats.unique_citations == 1
    assert stats.references == 4
    assert stats.unique_references == 2


def test_sorted_by_answer_with_stable_ties():
    brands = [make_brand("A", "a.com"), make_brand("B", "b.com"), make_brand("C", "c.com")]
    annotated = [
        {
            "A": VisibilityRecord(name="A", in_content=True),
            "B": VisibilityRecord(name="B", in_content=True),
            "C": VisibilityRecord(name="C", in_content=True),
        },
        {"B": VisibilityRecord(name="B", in_content=True)},
    ]

    stats = aggregate_brand_visibility(annotated, brands)

    assert [s.name for s in stats] == ["B", "A", "C"]
    assert [s.answer for s in stats] == [2, 1, 1]


def test_brands_missing_from_results_get_zero_counts():
    stats = aggregate_brand_visibility([{}], [EF])

    assert stats[0].answer == 0
    assert stats[0].citations == 0


def test_extract_cited_urls_per_engine():
    aio = [
        SearchResult(
            answer="x",
            sources=[
                Source(url="https://a.com/x#one", domain="a.com", cited=True),
                Source(url="https://ef.com/promo", domain="ef.com", cited=True),
            ],
        )
    ]
    aim = [
        SearchResult(
            answer="y",
            sources=[
                Source(url="https://a.com/x?utm=1", domain="a.com", cited=True),
                Source(url="https://b.com/", domain="b.com", cited=False),
            ],
        )
    ]

    urls = extract_cited_urls([aio, aim], include_uncited=False, exclude_brands=[EF], engine_labels=["aio", "aim"])

    assert list(urls) == ["https://a.com/x"]
    assert urls["https://a.com/x"].total == 2
    assert urls["https://a.com/x"].engines == {"aio": 1, "aim": 1}


def test_extract_cited_urls_default_labels_include_uncited():
    results = [[SearchResult(answer="y", sources=[Source(url="https://b.com/", domain="b.com", cited=False)])]]

    urls = extract_cited_urls(results)

    assert urls["https://b.com/"].engines == {"set_0": 1}


def test_extract_cited_urls_label_mismatch():
    with pytest.raises(ValueError):
        extract_cited_urls([[], []], engine_labels=["only-one"])


def test_aggregate_cited_domains():
    urls = {
        "https://a.com/x": UrlStats(total=2, engines={"aio": 1, "aim": 1}),
        "https://www.a.com/y": UrlStats(total=1, engines={"aio": 1, "aim": 0}),
        "https://b.org/": UrlStats(total=1, engines={"aio": 0, "aim": 1}),
    }

    domains = aggregate_cited_domains(urls)

    assert domains["a.com"].total == 3
    assert domains["a.com"].engines == {"aio": 2, "aim": 1}
    assert domains["a.com"].urls == {"https://a.com/x", "https://www.a.com/y"}
    assert domains["b.org"].total == 1
