import json

from components.html_cleaner import clean, markdown_excerpt
from components.job_extractor import extract
from components.job_normalizer import canonicalize_location, dedupe_key, normalize, parse_salary
from components.page_classifier import classify
from crawler.models import RawJobListing

PAGE = "https://example.com/jobs"


# ----------------------------
# html_cleaner
# ----------------------------

def test_clean_keeps_links_and_meta_drops_noise():
    raw = """
    <html><head>
      <title>Jobs</title>
      <meta name="description" content="Open roles">
      <meta name="viewport" content="width=device-width">
      <link rel="canonical" href="https://example.com/jobs">
      <link rel="stylesheet" href="/app.css">
      <script>window.__STATE__ = {}</script>
      <style>.x{color:red}</style>
    </head><body>
      <!-- tracking -->
      <div class="card" data-id="7" onclick="go()" aria-label="job">
        <a href="/jobs/1-engineer" class="link">Engineer</a>
        <img src="logo.png"><button>Save</button>
      </div>
    </body></html>
    """
    res = clean(raw, PAGE)
    html = res.cleaned_html

    assert 'href="/jobs/1-engineer"' in html
    assert 'rel="canonical"' in html
    assert 'name="description"' in html
    for gone in ("<script", "<style", "tracking", "stylesheet", "viewport", "<img", "<button",
                 "data-id", "onclick", "aria-label", 'class="'):
        assert gone not in html
    assert res.original_size == len(raw)
    assert res.cleaned_size == len(html) < res.original_size
    assert res.elements_removed >= 7


def test_clean_empty_input():
    res = clean("", PAGE)
    assert res.cleaned_html == ""
    assert res.original_size == 0


def test_markdown_excerpt_skips_boilerplate_and_truncates():
    md = markdown_excerpt("<h1>Jobs</h1><p>Cookie settings</p><p>Backend Engineer</p>")
    assert md.startswith("# Jobs")
    assert "Backend Engineer" in md
    assert "Cookie" not in md
    assert "\n\n\n" not in md

    assert len(markdown_excerpt("<p>" + "a" * 5000 + "</p>", limit=100)) == 100
    assert markdown_excerpt("") == ""


# ----------------------------
# job_extractor
# ----------------------------

def test_extract_json_ld_job_posting():
    ld = {
        "@context": "https://schema.org",
        "@graph": [
            {"@type": "Organization", "name": "Acme"},
            {
                "@type": "JobPosting",
                "title": "Data Engineer",
                "hiringOrganization": {"@type": "Organization", "name": "Acme"},
                "jobLocation": {"address": {"addressLocality": "Austin", "addressRegion": "TX"}},
                "baseSalary": {"currency": "USD", "value": {"minValue": 120000, "maxValue": 150000}},
                "datePosted": "2024-05-01",
                "url": "https://example.com/jobs/42-data-engineer",
            },
        ],
    }
    html = f'<html><script type="application/ld+json">{json.dumps(ld)}</script></html>'
    res = extract(html, PAGE)
    assert res.strategy == "json_ld"
    job = res.listings[0]
    assert (job.title, job.company, job.location) == ("Data Engineer", "Acme", "Austin, TX")
    assert job.salary == "USD 120000-150000"
    assert job.posted_date == "2024-05-01"


def test_extract_next_data_jobs():
    data = {"props": {"pageProps": {"jobs": [
        {"title": "Backend Engineer", "company": {"name": "Acme"}, "slug": "/jobs/123-backend", "locationNames": ["Remote", "NYC"]},
        {"title": "x"},
    ]}}}
    html = f'<html><script id="__NEXT_DATA__" type="application/json">{json.dumps(data)}</script></html>'
    res = extract(html, "https://wellfound.com/role/engineer")
    assert res.strategy == "site_specific"
    assert len(res.listings) == 1
    job = res.listings[0]
    assert job.company == "Acme"
    assert job.url == "https://wellfound.com/jobs/123-backend"
    assert job.location == "Remote, NYC"


def test_extract_job_anchor_heuristics():
    html = """
    <ul>
      <li><img alt="Acme company logo"><a href="/jobs/123-senior-engineer">Senior Engineer</a> $120k – $150k</li>
    </ul>
    <a href="/jobs/456-data-analyst">Apply</a>
    <a href="https://other.com/jobs/789-elsewhere">Elsewhere</a>
    <a href="/about">About</a>
    <a href="/jobs/123-senior-engineer#apply">Senior Engineer</a>
    """
    res = extract(html, PAGE)
    assert res.strategy == "anchor_heuristic"
    titles = [j.title for j in res.listings]
    assert titles == ["Senior Engineer", "Data Analyst"]
    first = res.listings[0]
    assert first.company == "Acme"
    assert first.salary == "$120k – $150k"
    assert first.url == "https://example.com/jobs/123-senior-engineer"


def test_extract_nothing():
    assert extract("", PAGE).strategy == "none"
    res = extract("<html><body><p>We are hiring soon</p></body></html>", PAGE)
    assert res.listings == []
    assert res.strategy == "none"


# ----------------------------
# page_classifier
# ----------------------------

def test_classify_listing():
    links = "".join(f'<a href="/jobs/{i}-role">Role {i}</a>' for i in range(6))
    c = classify(f"<html><body>{links}</body></html>", PAGE)
    assert c.type == "listing"
    assert c.confidence >= 0.6


def test_classify_captcha_and_login_wall():
    c = classify("<html><body>Please verify you are human. Complete the CAPTCHA.</body></html>",
                 "https://example.com/jobs/5-x")
    assert c.type == "captcha_challenge"

    c = classify('<html><body>Please sign in to continue<form>email password</form></body></html>',
                 "https://example.com/login")
    assert c.type == "login_wall"


def test_classify_error_and_irrelevant():
    assert classify("<html><body>Page not found</body></html>", PAGE, 404).type == "error"
    c = classify("", "https://example.com/")
    assert c.type == "irrelevant"
    assert c.confidence < 0.6


# ----------------------------
# job_normalizer
# ----------------------------

def test_dedupe_key_ignores_case_and_punctuation():
    assert dedupe_key("Senior Engineer!", "ACME Inc.") == "acmeinc::seniorengineer"
    assert dedupe_key("senior  engineer", "Acme, Inc") == dedupe_key("Senior-Engineer", "ACME INC")


def test_parse_salary_and_location():
    assert parse_salary("$120k - $150k") == (120000.0, 150000.0, "USD")
    assert parse_salary("£40,000 – £50,000") == (40000.0, 50000.0, "GBP")
    assert parse_salary("competitive") == (None, None, None)
    assert parse_salary(None) == (None, None, None)
    assert canonicalize_location("San  Francisco, CA") == "San Francisco, California"
    assert canonicalize_location("Remote") == "Remote"
    assert canonicalize_location("  ") is None


def test_normalize_maps_listing():
    raw = RawJobListing(
        title="  Data   Engineer ",
        company=None,
        location="Austin, TX",
        url="https://example.com/jobs/42-data-engineer",
        salary="$100k-$130k",
        extracted_from=PAGE,
        confidence=0.95,
    )
    job = normalize(raw, "ex")
    assert job.title == "Data Engineer"
    assert job.company_name == "Unknown Company"
    assert job.dedupe_key == "unknowncompany::dataengineer"
    assert job.location == "Austin, Texas"
    assert (job.salary_min, job.salary_max) == (100000.0, 130000.0)
    assert job.source_url == raw.url
    assert job.raw_extract["extracted_from"] == PAGE

    assert normalize(RawJobListing(title="   "), "ex") is None
