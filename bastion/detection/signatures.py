"""
Bastion — Built-in attack signature table.

Versioned, data-driven: category -> severity weight -> regex list.
Patterns are compiled case-insensitively by ``RuleSet.from_dict``.
A YAML file with the same shape can replace this table at startup.
"""

from __future__ import annotations

# Components a category is checked against when "targets" is omitted
DEFAULT_TARGETS = ["url", "referer", "user-agent", "origin"]

DEFAULT_SIGNATURES: dict = {
    "version": "2024.11.1",
    "categories": {
        "SQL_INJECTION": {
            "severity": 35,
            "patterns": [
                r"\bunion\b[\s/*+]+(?:all[\s/*+]+)?select\b",
                r"'\s*(?:or|and)\s+'?\w+'?\s*(?:=|<|>|\blike\b)",
                r"\b(?:or|and)\s+\d+\s*=\s*\d+",
                r"(?:;|'|\")\s*(?:drop|truncate|alter)\s+(?:table|database)\b",
                r"(?:;|'|\")\s*(?:delete\s+from|insert\s+into|update\s+\w+\s+set)\b",
                r"\b(?:sleep|benchmark|pg_sleep)\s*\(|\bwaitfor\s+delay\b",
                r"\b(?:information_schema|sysobjects|syscolumns|pg_tables|xp_cmdshell|load_file)\b",
                r"\binto\s+(?:out|dump)file\b",
                r"'\s*(?:--|#|/\*)",
                r"@@(?:version|datadir|hostname)\b",
            ],
        },
        "XSS": {
            "severity": 30,
            "patterns": [
                r"<\s*script\b",
                r"<\s*(?:iframe|object|embed|applet|svg|img)\b[^>]*\bon\w+\s*=",
                r"<\s*(?:iframe|object|embed|applet)\b",
                r"\bon(?:load|error|click|mouseover|focus|blur|key\w+|change|submit|toggle)\s*=",
                r"(?:javascript|vbscript)\s*:",
                r"\b(?:eval|settimeout|setinterval)\s*\(",
                r"string\.fromcharcode|document\.(?:cookie|write|location)",
                r"\bexpression\s*\(",
                r"\+AD[w4s]-",
            ],
        },
        "COMMAND_INJECTION": {
            "severity": 40,
            "patterns": [
                r"(?:;|\|\|?|&&)\s*(?:ls|cat|rm|wget|curl|bash|sh|zsh|nc|netcat|whoami|id|uname|ping|chmod|python\d?|perl|powershell)\b",
                r"`[^`]+`",
                r"\$\([^)]*\)",
                r"/bin/(?:ba|z)?sh\b|\bcmd\.exe\b|\bpowershell(?:\.exe)?\s+-e",
                r"\binvoke-expression\b|\biex\s*\(",
                r"\(\)\s*\{\s*:\s*;\s*\}\s*;",
            ],
        },
        "PATH_TRAVERSAL": {
            "severity": 25,
            "targets": ["raw-url", "referer"],
            "patterns": [
                r"(?:\.\.|%2e%2e)(?:/|\\|%2f|%5c)",
                r"/etc/(?:passwd|shadow|hosts)\b|/proc/self/|c:\\windows\\|boot\.ini",
                r"%00|%c0%af|%e0%80%af|%252e|%252f|%255c",
            ],
        },
        "LDAP_INJECTION": {
            "severity": 30,
            "patterns": [
                r"\(\s*\|\s*\(\s*\w+\s*=",
                r"\*\)\s*\(\s*(?:uid|cn|objectclass|mail)\s*=",
                r"\(\s*(?:uid|cn|objectclass)\s*=\s*\*\s*\)",
            ],
        },
        "XXE": {
            "severity": 35,
            "targets": ["url", "content-type"],
            "patterns": [
                r"<!entity",
                r"<!doctype[^>]*\[",
                r"\b(?:system|public)\s+[\"'](?:file|https?|ftp|php|expect)://",
            ],
        },
        "SSRF": {
            "severity": 40,
            "targets": ["url"],
            "patterns": [
                r"\b(?:file|gopher|dict|ldap|tftp)://",
                r"169\.254\.169\.254|metadata\.google\.internal",
                r"(?:url|uri|dest|redirect|callback|target)=https?(?::|%3a)(?://|%2f%2f)(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1\])",
            ],
        },
        "NOSQL_INJECTION": {
            "severity": 30,
            "patterns": [
                r"\[\$(?:ne|gt|lt|gte|lte|in|nin|regex|where|exists)\]",
                r"\{\s*[\"']?\$(?:ne|gt|lt|gte|lte|in|nin|regex|where|exists)[\"']?\s*:",
            ],
        },
        "TEMPLATE_INJECTION": {
            "severity": 35,
            "patterns": [
                r"\{\{.*?\}\}",
                r"\{%.*?%\}",
                r"\$\{[^}]*\}",
                r"__(?:class|mro|subclasses|globals|builtins)__",
            ],
        },
        "BOT_SIGNATURES": {
            "severity": 15,
            "targets": ["user-agent"],
            "patterns": [
                r"\b(?:bot|crawler|spider|scraper|scanner)\b",
                r"headless|phantomjs|selenium|puppeteer|playwright",
                r"\bcurl/|\bwget/|python-requests|python-urllib|go-http-client|libwww|okhttp|httpie",
                r"sqlmap|nikto|nmap|dirbuster|\bdirb\b|gobuster|wfuzz|burp|acunetix|nessus|openvas|masscan|zgrab|nuclei|w3af|metasploit",
            ],
        },
        "CRYPTO_MINING": {
            "severity": 25,
            "patterns": [
                r"xmrig|cpuminer|cgminer|bfgminer|coinhive|cryptonight|stratum\+tcp",
            ],
        },
        "DATA_EXFILTRATION": {
            "severity": 45,
            "targets": ["url"],
            "patterns": [
                r"\b\d{4}[\s-]\d{4}[\s-]\d{4}[\s-]\d{4}\b",
                r"\b\d{3}-\d{2}-\d{4}\b",
                r"\b(?:dump|export|backup)\.(?:sql|db|sqlite|bak)\b",
                r"/\.(?:env|htpasswd|git/config|aws/credentials)\b",
            ],
        },
        "DOS_PATTERNS": {
            "severity": 30,
            "patterns": [
                r"slowloris|torshammer|goldeneye|\bloic\b|\bhulk\b",
                r"(.)\1{999,}",
            ],
        },
        "EVASION_TECHNIQUES": {
            "severity": 20,
            "targets": ["raw-url", "referer"],
            "patterns": [
                r"(?:%[0-9a-f]{2}){8,}",
                r"(?:&#x?[0-9a-f]+;?){3,}",
                r"(?:\\u[0-9a-f]{4}){2,}",
                r"(?-i:\b(?:SeLeCt|sElEcT|UnIoN|uNiOn|InSeRt|WhErE)\b)",
                r"/\*.*?\*/",
                r"\b(?:chr|char)\(\d+\)",
            ],
        },
    },
    # Checked against the decoded query/path by the request sanitizer.
    "sanitizer": [
        {"name": "script_tag", "pattern": r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>"},
        {"name": "javascript_uri", "pattern": r"javascript:"},
        {"name": "vbscript_uri", "pattern": r"vbscript:"},
        {"name": "event_handler", "pattern": r"<[^>]*\bon\w+\s*="},
        {"name": "css_expression", "pattern": r"expression\s*\("},
        {"name": "sql_server_variable", "pattern": r"@@\w+"},
        {"name": "union_select", "pattern": r"\bunion\b.*\bselect\b"},
        {"name": "insert_into", "pattern": r"\binsert\b.*\binto\b.*\bvalues\b"},
        {"name": "delete_from", "pattern": r"\bdelete\b\s+\bfrom\b"},
        {"name": "drop_table", "pattern": r"\bdrop\b\s+\btable\b"},
    ],
}
