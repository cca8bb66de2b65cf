#!/usr/bin/env python3
"""
Tests for image extraction and pagination discovery.
"""

from urllib.parse import parse_qs, urlparse

from category_scraper import (
    CandidateKind,
    CrawlState,
    Deduplicator,
    HtmlDocument,
    HtmlImageExtractor,
    PaginationWalker,
    select_from_srcset,
)

BASE_URL = "https://shop.example.com/category/baby/"


def urls(candidates):
    return [c.resolved_url for c in candidates]


def test_lazy_attribute_wins_over_src():
    """A lazy-load attribute beats the placeholder in src."""
    extractor = HtmlImageExtractor()
    candidates = extractor.extract('<img src="placeholder.gif" data-src="real.jpg">', BASE_URL)

    assert urls(candidates) == ["https://shop.example.com/category/baby/real.jpg"]
    assert candidates[0].kind is CandidateKind.LAZY
    assert candidates[0].raw_value == "real.jpg"
    assert candidates[0].source_page_url == BASE_URL
    print("✓ Lazy attribute priority")


def test_other_lazy_attributes():
    """Vendor lazy attributes are recognized; blank ones fall through."""
    html = """
    <img src="/blank.gif" data-lazy-src="/img/one.jpg">
    <img src="/blank.gif" data-original="/img/two.jpg">
    <img src="/img/three.jpg" data-src="   ">
    <img src="data:image/gif;base64,R0lGODlhAQABAAAAACw=" data-lazy="/img/four.jpg">
    """
    candidates = HtmlImageExtractor().extract(html, BASE_URL)

    assert urls(candidates) == [
        "https://shop.example.com/img/one.jpg",
        "https://shop.example.com/img/two.jpg",
        "https://shop.example.com/img/three.jpg",
        "https://shop.example.com/img/four.jpg",
    ]
    assert [c.kind for c in candidates] == [
        CandidateKind.LAZY, CandidateKind.LAZY, CandidateKind.PLAIN, CandidateKind.LAZY
    ]
    print("✓ Vendor lazy attributes")


def test_srcset_prefers_largest_width():
    """The widest srcset entry is chosen."""
    extractor = HtmlImageExtractor()
    candidates = extractor.extract('<img srcset="a.jpg 480w, b.jpg 1200w">', BASE_URL)

    assert urls(candidates) == ["https://shop.example.com/category/baby/b.jpg"]
    assert candidates[0].kind is CandidateKind.SRCSET_VARIANT
    print("✓ Srcset width preference")


def test_srcset_parsing():
    """Density-only descriptors fall back to the first entry."""
    assert select_from_srcset("a.jpg 1x, b.jpg 2x") == "a.jpg"
    assert select_from_srcset("a.jpg") == "a.jpg"
    assert select_from_srcset("small.jpg 300w,large.jpg 900w,mid.jpg 600w") == "large.jpg"
    assert select_from_srcset("x.jpg 2x, y.jpg 640w") == "y.jpg"
    assert select_from_srcset(" , ") is None
    print("✓ Srcset parsing")


def test_srcset_beats_src():
    """srcset is used before the plain src attribute."""
    html = '<img src="/img/thumb.jpg" srcset="/img/m.jpg 600w, /img/l.jpg 1000w">'
    candidates = HtmlImageExtractor().extract(html, BASE_URL)
    assert urls(candidates) == ["https://shop.example.com/img/l.jpg"]
    print("✓ Srcset before src")


def test_srcset_placeholder_does_not_hide_real_image():
    """A data: placeholder in srcset is skipped, even with a comma inside it."""
    assert select_from_srcset("data:image/gif;base64,R0lGOD 1x, /real.jpg 2x") == "/real.jpg"
    assert select_from_srcset("data:image/gif;base64,R0lGOD 10w, /big.jpg 800w") == "/big.jpg"

    html = '<img src="/ph.gif" srcset="data:image/gif;base64,R0lGOD 1x, /real.jpg 2x">'
    candidates = HtmlImageExtractor().extract(html, BASE_URL)
    assert urls(candidates) == ["https://shop.example.com/real.jpg"]
    assert candidates[0].kind is CandidateKind.SRCSET_VARIANT
    print("✓ Srcset placeholders skipped")


def test_url_forms_are_resolved():
    """Absolute, protocol-relative and relative references become absolute."""
    html = """
    <img src="https://cdn.example.com/a.jpg">
    <img src="//cdn.example.com/b.jpg">
    <img src="../c.jpg">
    <img src="/d.jpg?size=large#zoom">
    """
    candidates = HtmlImageExtractor().extract(html, BASE_URL)

    assert urls(candidates) == [
        "https://cdn.example.com/a.jpg",
        "https://cdn.example.com/b.jpg",
        "https://shop.example.com/category/c.jpg",
        "https://shop.example.com/d.jpg?size=large",
    ]
    print("✓ URL resolution")


def test_malformed_values_are_skipped():
    """Empty or unparsable values never raise."""
    html = """
    <img>
    <img src="">
    <img src="   ">
    <img src="javascript:void(0)">
    <img src="http://[::1/broken.jpg">
    <img srcset="data:image/png;base64,AAAA 1x">
    <img src="/ok.jpg">
    """
    candidates = HtmlImageExtractor().extract(html, BASE_URL)
    assert urls(candidates) == ["https://shop.example.com/ok.jpg"]
    print("✓ Malformed values skipped")


def test_picture_sources_and_backgrounds():
    """<source> srcsets and inline background images are collected in order."""
    html = """
    <div class="hero" style="background-image: url('/img/hero.jpg')"></div>
    <picture>
        <source srcset="/img/p-800.webp 800w, /img/p-1600.webp 1600w" type="image/webp">
        <img src="/img/p-800.jpg">
    </picture>
    <span style="background: url(/img/tile.png) no-repeat, url(&quot;/img/tile2.png&quot;)"></span>
    """
    candidates = HtmlImageExtractor().extract(html, BASE_URL)

    assert urls(candidates) == [
        "https://shop.example.com/img/hero.jpg",
        "https://shop.example.com/img/p-1600.webp",
        "https://shop.example.com/img/p-800.jpg",
        "https://shop.example.com/img/tile.png",
        "https://shop.example.com/img/tile2.png",
    ]
    assert candidates[1].kind is CandidateKind.SRCSET_VARIANT
    print("✓ Picture sources and background images")


def test_duplicates_within_a_page_are_kept():
    """Per-page output keeps duplicates; de-duplication is global."""
    html = '<img src="/a.jpg"><img data-src="/a.jpg"><img src="/a.jpg">'
    candidates = HtmlImageExtractor().extract(html, BASE_URL)
    assert len(candidates) == 3
    print("✓ Per-page duplicates kept")


def make_walker(**kwargs):
    return PaginationWalker(Deduplicator(), **kwargs)


def test_rel_next_link():
    """rel=next is followed."""
    walker = make_walker()
    html = '<a href="/products?page=1">1</a><a rel="next" href="/products?page=2">Go</a>'
    next_url = walker.next_page(html, "https://shop.example.com/products?page=1", 0,
                                CrawlState(), has_content=True)
    assert next_url == "https://shop.example.com/products?page=2"
    print("✓ rel=next link")


def test_next_link_by_class_and_text():
    """Class markers and short link text are recognized."""
    walker = make_walker(numeric_pagination=False)
    current = "https://shop.example.com/products"

    html = '<ul class="pagination"><li class="next"><a href="/products/p2">2</a></li></ul>'
    assert walker.next_page(html, current, 0, CrawlState(), True) == "https://shop.example.com/products/p2"

    html = '<a href="/products/p3">Next ›</a>'
    assert walker.next_page(html, current, 0, CrawlState(), True) == "https://shop.example.com/products/p3"

    html = '<a href="/products/older">Older posts</a>'
    assert walker.next_page(html, current, 0, CrawlState(), True) == "https://shop.example.com/products/older"

    html = '<a href="/blog/next-gen">Read about our next generation of baby products</a>'
    assert walker.next_page(html, current, 0, CrawlState(), True) is None

    # Placeholder anchors are skipped in favour of a real link
    html = ('<a class="next" href="#">Next</a><a href="javascript:void(0)">Next</a>'
            '<a href="/products/p4">Next page</a>')
    assert walker.next_page(html, current, 0, CrawlState(), True) == "https://shop.example.com/products/p4"
    print("✓ Class and text markers")


def test_product_names_are_not_next_links():
    """Link text must say "next" as a word, not merely contain it."""
    walker = make_walker(numeric_pagination=False)
    current = "https://shop.example.com/c?page=1"

    html = '<div class="grid"><a href="/products/nextbase-dashcam">Nextbase Dashcam</a></div>'
    assert walker.next_page(html, current, 0, CrawlState(), True) is None

    html = ('<div class="grid"><a href="/products/nextbase-dashcam">Nextbase Dashcam</a>'
            '<a href="/products/context-lamp">Context Lamp</a></div>'
            '<nav><a href="/c?page=2">›</a></nav>')
    assert walker.next_page(html, current, 0, CrawlState(), True) == "https://shop.example.com/c?page=2"
    print("✓ Product names ignored as next links")


def test_numeric_fallback():
    """Without a next link the page parameter is incremented."""
    walker = make_walker()
    html = '<div class="grid"><img src="/a.jpg"></div>'

    next_url = walker.next_page(html, "https://shop.example.com/products?category=baby&page=2",
                                1, CrawlState(), has_content=True)
    query = parse_qs(urlparse(next_url).query)
    assert query == {'category': ['baby'], 'page': ['3']}

    # No page parameter yet: the seed counts as page 1
    next_url = walker.next_page(html, "https://shop.example.com/products?category=baby",
                                0, CrawlState(), has_content=True)
    assert parse_qs(urlparse(next_url).query) == {'category': ['baby'], 'page': ['2']}

    # Custom parameter name
    walker = make_walker(page_param="p")
    next_url = walker.next_page(html, "https://shop.example.com/list?p=7", 6, CrawlState(), True)
    assert parse_qs(urlparse(next_url).query) == {'p': ['8']}
    print("✓ Numeric pagination fallback")


def test_numeric_fallback_needs_content():
    """An empty page ends pagination instead of guessing further."""
    walker = make_walker()
    assert walker.next_page("<p>No products</p>", "https://shop.example.com/products?page=9",
                            8, CrawlState(), has_content=False) is None

    walker = make_walker(numeric_pagination=False)
    assert walker.next_page("<p>x</p>", "https://shop.example.com/products?page=9",
                            8, CrawlState(), has_content=True) is None
    print("✓ Numeric fallback requires content")


def test_cycle_rejection():
    """A next link to an already visited page terminates pagination."""
    dedup = Deduplicator()
    walker = PaginationWalker(dedup)
    current = "https://shop.example.com/products?page=2"

    state = CrawlState()
    state.pages_visited.add(dedup.canonicalize("https://shop.example.com/products?page=1"))
    state.pages_visited.add(dedup.canonicalize(current))

    # Points at itself
    html = '<a rel="next" href="/products?page=2">Next</a>'
    assert walker.next_page(html, current, 1, state, True) is None

    # Points back at an earlier page, spelled differently
    html = '<a rel="next" href="HTTPS://SHOP.EXAMPLE.COM:443/products/?page=1#top">Next</a>'
    assert walker.next_page(html, current, 1, state, True) is None
    print("✓ Cycle rejection")


def test_product_links():
    """Only same-host product detail links are returned, once each."""
    walker = make_walker()
    document = HtmlDocument.parse("""
    <a href="/product/blue-onesie">Blue</a>
    <a href="/products/soft-blanket#reviews">Blanket</a>
    <a href="/products">All products</a>
    <a href="/products?category=baby">Baby</a>
    <a href="https://other.example.com/product/x">Elsewhere</a>
    <a href="/product/blue-onesie">Blue again</a>
    <a href="/cart">Cart</a>
    """)
    links = walker.product_links(document, "https://shop.example.com/products?category=baby")

    assert links == [
        "https://shop.example.com/product/blue-onesie",
        "https://shop.example.com/products/soft-blanket",
    ]
    print("✓ Product links")


def main():
    """Run all tests."""
    print("=" * 60)
    print("Extraction and Pagination Tests")
    print("=" * 60)

    test_lazy_attribute_wins_over_src()
    test_other_lazy_attributes()
    test_srcset_prefers_largest_width()
    test_srcset_parsing()
    test_srcset_beats_src()
    test_srcset_placeholder_does_not_hide_real_image()
    test_url_forms_are_resolved()
    test_malformed_values_are_skipped()
    test_picture_sources_and_backgrounds()
    test_duplicates_within_a_page_are_kept()
    test_rel_next_link()
    test_next_link_by_class_and_text()
    test_product_names_are_not_next_links()
    test_numeric_fallback()
    test_numeric_fallback_needs_content()
    test_cycle_rejection()
    test_product_links()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED! ✓")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    exit(main())
