from __future__ import annotations

from citewatch.models.records import OnPageSeoRecord
from citewatch.tools.page_seo import extract_on_page_seo, folder_depth

ARTICLE = """
<html>
<head>
  <title> Best CRM tools in 2024 </title>
  <meta name="Description" content="A comparison of CRM tools for small teams.">
  <script type="application/ld+json">{"@type": "Article"}</script>
  <style>.hidden { display: none }</style>
</head>
<body>
  <nav aria-label="Main">
    <a href="/">Home</a>
    <a href="https://www.acme.io/pricing">Pricing</a>
    <a href="https://beta.io/review">Beta</a>
    <a href="#top">Top</a>
    <a href="mailto:hi@acme.io">Mail</a>
  </nav>
  <h1>Best CRM tools</h1>
  <h2>Acme</h2>
  <h2>Beta</h2>
  <h3>Pricing</h3>
  <p>Acme is a simple CRM for small teams.</p>
  <img src="a.png"><img src="b.png">
  <ul><li>one</li></ul>
  <ol><li>first</li></ol>
  <table><tr><td>cell</td></tr></table>
  <iframe src="https://www.youtube.com/embed/abc"></iframe>
  <script>var tracking = "not counted words here";</script>
</body>
</html>
"""


def test_extracts_structure_from_article():
    record = extract_on_page_seo(ARTICLE, "https://acme.io/blog/crm/best-tools")

    assert record.is_fallback is False
    assert record.page_title == "Best CRM tools in 2024"
    assert record.meta_description == "A comparison of CRM tools for small teams."
    assert record.heading_counts == {"h1": 1, "h2": 2, "h3": 1, "h4": 0, "h5": 0, "h6": 0}
    assert record.heading_count == 4
    assert record.image_count == 2
    assert record.table_count == 1
    assert record.unordered_list_count == 1
    assert record.ordered_list_count == 1
    assert record.video_present is True
    assert record.schema_markup_present is True
    assert record.aria_labels_present is True
    assert record.folder_depth == 3


def test_internal_links_resolve_relative_and_www_hosts():
    record = extract_on_page_seo(ARTICLE, "https://acme.io/blog/crm/best-tools")

    # "/" and the www pricing link; external, fragment and mailto links are skipped
    assert record.internal_link_count == 2


def test_word_count_ignores_scripts_and_styles():
    html = (
        "<html><head><style>p { color: red }</style></head><body><p>one two three</p>"
        "<script>four five</script><noscript>six</noscript></body></html>"
    )

    record = extract_on_page_seo(html, "https://acme.io/")

    assert record.word_count == 3


def test_bare_page_has_empty_signals():
    record = extract_on_page_seo("<p>just text</p>", "https://acme.io")

    assert record.is_fallback is False
    assert record.page_title == ""
    assert record.meta_description == ""
    assert record.heading_count == 0
    assert record.video_present is False
    assert record.schema_markup_present is False
    assert record.aria_labels_present is False
    assert record.folder_depth == 0


def test_empty_html_gives_default_record():
    assert extract_on_page_seo("", "https://acme.io/a") == OnPageSeoRecord.default()
    assert extract_on_page_seo("   \n", "https://acme.io/a").is_fallback is True


def test_default_record_is_fallback_with_zero_counts():
    record = OnPageSeoRecord.default()

    assert record.is_fallback is True
    assert record.word_count == 0
    assert record.heading_counts == {}


def test_folder_depth_counts_path_segments():
    assert folder_depth("https://acme.io") == 0
    assert folder_depth("https://acme.io/") == 0
    assert folder_depth("https://acme.io/blog/") == 1
    assert folder_depth("https://acme.io/blog/crm/post?ref=x") == 3
