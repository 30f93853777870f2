"""
Tests for the attack signature matcher.
"""

import pytest

from bastion.detection.patterns import PatternMatcher, RuleSet
from bastion.detection.signatures import DEFAULT_SIGNATURES


@pytest.fixture
def matcher():
    return PatternMatcher()


def test_clean_text_has_no_match(matcher):
    result = matcher.match("/courses/42/lessons?page=2")
    assert not result.matched
    assert result.score == 0


@pytest.mark.parametrize("text,category", [
    ("/search?q=1 UNION SELECT password FROM users", "SQL_INJECTION"),
    ("/search?q=' or 'a'='a", "SQL_INJECTION"),
    ("/p?x=<script>alert(1)</script>", "XSS"),
    ("/p?cb=javascript:alert(1)", "XSS"),
    ("/ping?host=127.0.0.1; cat /etc/passwd", "COMMAND_INJECTION"),
    ("/fetch?url=file:///etc/shadow", "SSRF"),
    ("/fetch?url=http://169.254.169.254/latest/meta-data", "SSRF"),
    ("/users?filter[$ne]=null", "NOSQL_INJECTION"),
    ("/render?name={{7*7}}", "TEMPLATE_INJECTION"),
    ("/files/backup.sql", "DATA_EXFILTRATION"),
    ("/.env", "DATA_EXFILTRATION"),
])
def test_known_attacks_detected(matcher, text, category):
    result = matcher.match(text)
    assert category in result.categories


def test_category_counts_once_per_string(matcher):
    """Several SQL patterns in one string still weigh one severity."""
    result = matcher.match("' OR '1'='1' UNION SELECT @@version -- ")
    assert result.categories["SQL_INJECTION"] == 35
    assert list(result.categories).count("SQL_INJECTION") == 1


def test_categories_sum(matcher):
    result = matcher.match("/x?a=<script>x</script>&b=1 union select 2")
    assert result.score == 35 + 30


def test_target_restricts_categories(matcher):
    """Bot signatures only apply to the user-agent."""
    assert "BOT_SIGNATURES" in matcher.match("sqlmap/1.7", target="user-agent").categories
    assert "BOT_SIGNATURES" not in matcher.match("sqlmap/1.7", target="url").categories


def test_path_traversal_checked_on_raw_url(matcher):
    assert "PATH_TRAVERSAL" in matcher.match("/static/..%2f..%2fetc/passwd", target="raw-url").categories
    assert "PATH_TRAVERSAL" not in matcher.match("/static/../x", target="user-agent").categories


def test_scan_aggregates_components(matcher):
    scan = matcher.scan({
        "url": "/search?q=' or 'x'='x",
        "raw-url": "/search?q=%27%20or%20%27x%27%3D%27x",
        "user-agent": "nikto/2.1.6",
    })
    assert scan.categories == {"SQL_INJECTION", "BOT_SIGNATURES"}
    assert scan.score == 35 + 15
    assert "SQL_INJECTION in url" in scan.reasons()


def test_scan_clean_request(matcher):
    scan = matcher.scan({"url": "/", "raw-url": "/", "user-agent": "Mozilla/5.0 Chrome/120.0"})
    assert scan.score == 0
    assert scan.categories == set()


def test_sanitizer_names(matcher):
    assert matcher.dangerous("1 union select password from users") == ["union_select"]
    assert "script_tag" in matcher.dangerous("<script>alert(1)</script>")
    assert "event_handler" in matcher.dangerous('<img src=x onerror="alert(1)">')
    assert matcher.dangerous("/courses?sort=name") == []
    assert matcher.dangerous("") == []


def test_default_table_version(matcher):
    assert matcher.version == DEFAULT_SIGNATURES["version"]
    assert matcher.ruleset.severity_of("DATA_EXFILTRATION") == 45
    with pytest.raises(KeyError):
        matcher.ruleset.severity_of("NOT_A_CATEGORY")


def test_ruleset_from_yaml(tmp_path):
    path = tmp_path / "signatures.yml"
    path.write_text(
        'version: "test-1"\n'
        "categories:\n"
        "  INTERNAL_PATHS:\n"
        "    severity: 50\n"
        "    targets: [url]\n"
        "    patterns:\n"
        "      - '/internal/debug'\n"
        "sanitizer:\n"
        "  - name: marker\n"
        "    pattern: 'xx-evil-xx'\n"
    )
    matcher = PatternMatcher(RuleSet.from_yaml(path))
    assert matcher.version == "test-1"
    assert matcher.match("/INTERNAL/Debug", target="url").categories == {"INTERNAL_PATHS": 50}
    assert matcher.match("/internal/debug", target="user-agent").score == 0
    assert matcher.dangerous("a xx-EVIL-xx b") == ["marker"]
