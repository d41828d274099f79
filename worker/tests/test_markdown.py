from bs4 import BeautifulSoup

from leadpipe.core import markdown

HTML = """
<html><head><title>Acme</title><style>.x{}</style></head>
<body>
  <nav><a href="/">Home</a></nav>
  <h1>Acme Plumbing</h1>
  <p>Family-owned <strong>since 1998</strong>. <a href="/contact">Call us</a>.</p>
  <ul><li>Repairs</li><li>Installs</li></ul>
  <script>track()</script>
  <table><tr><th>Day</th><th>Hours</th></tr><tr><td>Mon</td><td>8-5</td></tr></table>
  <footer>© 2024 Acme</footer>
</body></html>
"""


def test_html_to_markdown_keeps_structure_and_drops_chrome():
    soup = BeautifulSoup(HTML, "html.parser")

    text = markdown.html_to_markdown(soup)

    assert "# Acme Plumbing" in text
    assert "Family-owned **since 1998**. [Call us](/contact)." in text
    assert "- Repairs\n\n- Installs" in text
    assert "| Mon | 8-5 |" in text
    assert "track()" not in text
    assert "Home" not in text
    # The caller's soup is left untouched.
    assert soup.find("script") is not None


def test_combine_pages_orders_priority_pages_first():
    pages = [
        ("https://acme.example/", "Home", "welcome"),
        ("https://acme.example/about", "About", "our story"),
    ]

    combined = markdown.combine_pages(pages)

    assert combined.index("our story") < combined.index("welcome")
    assert "Source: https://acme.example/about" in combined


def test_combine_pages_caps_length():
    pages = [(f"https://acme.example/p{i}", f"P{i}", "x" * 400) for i in range(10)]

    combined = markdown.combine_pages(pages, max_chars=1000)

    assert len(combined) <= 1000 + 2 * len(pages)
    assert "p0" in combined
    assert "p9" not in combined


def test_page_priority():
    assert markdown.page_priority("https://a.example/about-us") == 0
    assert markdown.page_priority("https://a.example/") == len(markdown.PRIORITY_PATHS)
