# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record validation"""

from __future__ import annotations

import ipaddress
import logging
import math
import time
from typing import Literal, Optional, TypedDict, Union
from collections.abc import Iterator, Sequence

from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

from checkspf._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_RESOLVER,
    MAX_DNS_LOOKUPS,
)
from checkspf.resolver import resolve_txt
from checkspf.utils import DNSException, normalize_domain

"""Copyright 2019-2025 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

SPF_VERSION_TAG = "v=spf1"
SPF_VERSION = "spf1"

SPF_MECHANISM_TYPES: tuple[str, ...] = (
    "all",
    "include",
    "a",
    "mx",
    "ip4",
    "ip6",
    "ptr",
    "exists",
    "redirect",
    "exp",
)

# Terms that cost one DNS lookup each (RFC 7208 § 4.6.4)
LOOKUP_MECHANISMS = ("include", "a", "mx", "ptr", "exists", "redirect")
# Terms whose target has its own SPF record
EXPANDABLE_MECHANISMS = ("include", "redirect")

# Separators between a term name and its value, in order of precedence
TERM_SEPARATORS = (":", "/", "=")

MAX_TXT_STRING_LENGTH = 255
MAX_UDP_RECORD_BYTES = 512

spf_qualifiers = ("+", "-", "~", "?")


class SPFError(Exception):
    """Raised when a fatal SPF error occurs"""


class SPFRecordNotFound(SPFError):
    """Raised when an SPF record could not be found"""

    def __init__(self, error: Union[Exception, str], domain: str):
        self.error = error
        self.domain = domain
        SPFError.__init__(self, str(error))

    def __str__(self):
        return str(self.error)


class ValidationIssue(TypedDict):
    severity: Literal["error", "warning"]
    message: str


class SPFMechanism(TypedDict):
    type: str
    qualifier: str
    value: str


class SPFExpandedMechanism(SPFMechanism):
    expanded: SPFResult


class SPFResult(TypedDict):
    domain: str
    record: Optional[str]
    version: Optional[str]
    mechanisms: list[Union[SPFMechanism, SPFExpandedMechanism]]
    lookup_count: int
    issues: list[ValidationIssue]
    query_time_ms: int


class ParsedSPFRecord(TypedDict):
    version: Optional[str]
    mechanisms: list[SPFMechanism]
    issues: list[ValidationIssue]


class SPFQueryResults(TypedDict):
    record: str
    txt_records: int
    issues: list[ValidationIssue]


def _issue(severity: Literal["error", "warning"], message: str) -> ValidationIssue:
    issue: ValidationIssue = {"severity": severity, "message": message}
    return issue


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


def _visited_key(domain: str) -> str:
    return normalize_domain(domain).rstrip(".")


class LookupContext:
    """
    Lookup state shared by every node of one SPF expansion tree

    One context is created per top-level request and passed, never copied,
    through every recursive :func:`lookup_spf` call. The DNS lookup limit and
    the set of visited domains apply to the whole tree.
    """

    def __init__(
        self,
        domain: str,
        *,
        max_lookups: int = MAX_DNS_LOOKUPS,
        resolver: str = DEFAULT_RESOLVER,
        fallback_resolvers: Optional[Sequence[str]] = None,
        timeout: float = DEFAULT_DNS_TIMEOUT,
        nameservers: Optional[Sequence[str | Nameserver]] = None,
        cache: Optional[ExpiringDict] = None,
    ):
        self.count = 0
        self.max_lookups = max_lookups
        self.visited = {_visited_key(domain)}
        self.resolver = resolver
        self.fallback_resolvers = fallback_resolvers
        self.timeout = timeout
        self.nameservers = nameservers
        self.cache = cache

    def consume_lookup(self) -> bool:
        """
        Counts one DNS lookup against the budget

        The counter stops one past the limit, so the lookup that exceeds the
        limit is counted and nothing after it is.

        Returns:
            bool: ``True`` if the lookup is within the limit
        """
        if self.count <= self.max_lookups:
            self.count += 1
        return self.count <= self.max_lookups


def query_spf_record(
    domain: str,
    *,
    resolver: str = DEFAULT_RESOLVER,
    fallback_resolvers: Optional[Sequence[str]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    cache: Optional[ExpiringDict] = None,
) -> SPFQueryResults:
    """
    Queries DNS for an SPF record

    Args:
        domain (str): A domain name
        resolver (str): The preferred DNS backend
        fallback_resolvers (list): DNS backends to try when the preferred one fails
        timeout (float): number of seconds to wait for an answer from DNS
        nameservers (list): A list of nameservers for the native backend
        cache (ExpiringDict): Optional DNS answer cache

    Returns:
        dict: A ``dict`` with the following keys:
            - ``record`` - The first SPF record string
            - ``txt_records`` - The number of TXT records at the domain
            - ``issues`` - A ``list`` of issues found with the published records

    Raises:
        :exc:`checkspf.spf.SPFRecordNotFound`
    """
    domain = normalize_domain(domain)
    logging.debug(f"Checking for a SPF record on {domain}")
    try:
        records = resolve_txt(
            domain,
            backend=resolver,
            fallback_backends=fallback_resolvers,
            timeout=timeout,
            nameservers=nameservers,
            cache=cache,
        )
    except DNSException as error:
        raise SPFRecordNotFound(f"DNS lookup failed: {error}", domain)

    if len(records) == 0:
        raise SPFRecordNotFound("No TXT records found", domain)
    spf_records = [r for r in records if r.lower().startswith(SPF_VERSION_TAG)]
    if len(spf_records) == 0:
        raise SPFRecordNotFound(
            f"No SPF record found among {len(records)} TXT records", domain
        )

    issues = []
    if len(spf_records) > 1:
        issues.append(
            _issue(
                "error",
                f"Multiple SPF records found ({len(spf_records)}). "
                "Only one is allowed (RFC 7208 Section 4.5); "
                "the first one was evaluated",
            )
        )

    results: SPFQueryResults = {
        "record": spf_records[0],
        "txt_records": len(records),
        "issues": issues,
    }
    return results


def parse_spf_term(term: str) -> SPFMechanism:
    """
    Splits a single SPF term into a qualifier, a type, and a value

    Args:
        term (str): A mechanism or modifier, e.g. ``-ip4:192.0.2.0/24``

    Returns:
        dict: A ``dict`` with ``type``, ``qualifier``, and ``value`` keys
    """
    qualifier = "+"
    if term[:1] in spf_qualifiers:
        qualifier = term[0]
        term = term[1:]

    term_type = term
    value = ""
    for separator in TERM_SEPARATORS:
        index = term.find(separator)
        if index > 0:
            term_type = term[:index]
            # A CIDR length stays attached to its value, e.g. a/24
            value = term[index:] if separator == "/" else term[index + 1 :]
            break

    mechanism: SPFMechanism = {
        "type": term_type.lower(),
        "qualifier": qualifier,
        "value": value,
    }
    return mechanism


def parse_spf_record(record: str) -> ParsedSPFRecord:
    """
    Parses an SPF record into its version and ordered list of terms

    Parsing never fails on unknown terms; they are passed through with their
    name as the type.

    Args:
        record (str): An SPF record

    Returns:
        dict: A ``dict`` with the following keys:
            - ``version`` - ``spf1``, or ``None`` if the version tag is invalid
            - ``mechanisms`` - A ``list`` of mechanisms and modifiers
            - ``issues`` - A ``list`` of issues found while parsing
    """
    parsed: ParsedSPFRecord = {"version": None, "mechanisms": [], "issues": []}

    terms = record.split()
    if len(terms) == 0:
        parsed["issues"].append(_issue("error", "Empty SPF record"))
        return parsed

    if not terms[0].lower().startswith(SPF_VERSION_TAG):
        parsed["issues"].append(
            _issue(
                "error",
                f'Invalid version: expected "{SPF_VERSION_TAG}", got "{terms[0]}"',
            )
        )
        return parsed

    parsed["version"] = SPF_VERSION
    for term in terms[1:]:
        mechanism = parse_spf_term(term)
        parsed["mechanisms"].append(mechanism)
        if mechanism["type"] == "ptr":
            parsed["issues"].append(
                _issue(
                    "warning",
                    '"ptr" mechanism is deprecated (RFC 7208 Section 5.5)',
                )
            )

    return parsed


def _check_ip_value(mechanism: SPFMechanism) -> Optional[ValidationIssue]:
    family = mechanism["type"]
    value = mechanism["value"]
    expected = ipaddress.IPv4Network if family == "ip4" else ipaddress.IPv6Network
    try:
        network = ipaddress.ip_network(value, strict=False)
    except ValueError:
        return _issue("error", f"{value!r} is not a valid {family} value")
    if not isinstance(network, expected):
        return _issue(
            "error", f"{value!r} is not a valid {family} value (wrong address family)"
        )
    return None


def check_spf_rules(
    record: str, mechanisms: Sequence[SPFMechanism]
) -> list[ValidationIssue]:
    """
    Checks the structure of a parsed SPF record

    Args:
        record (str): The raw SPF record
        mechanisms (list): The mechanisms parsed from the record

    Returns:
        list: Issues to append to the parser's issues
    """
    issues = []
    types = [m["type"] for m in mechanisms]

    all_index = types.index("all") if "all" in types else -1
    if all_index >= 0 and all_index != len(mechanisms) - 1:
        issues.append(
            _issue("warning", '"all" mechanism should be the last term in the record')
        )
    if all_index < 0:
        issues.append(
            _issue(
                "warning",
                'No "all" mechanism found. Consider adding "-all" or "~all" at the end',
            )
        )
    if types.count("all") > 1:
        issues.append(_issue("error", 'The "all" mechanism can only be used once'))

    redirect_count = types.count("redirect")
    if redirect_count > 1:
        issues.append(
            _issue("error", "Multiple redirect modifiers found (only one allowed)")
        )
    if redirect_count > 0 and all_index >= 0:
        issues.append(
            _issue(
                "warning",
                'Both "redirect" and "all" present. '
                '"redirect" is ignored when "all" is present',
            )
        )
    if types.count("exp") > 1:
        issues.append(_issue("error", "Multiple exp modifiers found (only one allowed)"))

    for mechanism in mechanisms:
        if mechanism["type"] in ("ip4", "ip6"):
            ip_issue = _check_ip_value(mechanism)
            if ip_issue is not None:
                issues.append(ip_issue)
        elif mechanism["type"] not in SPF_MECHANISM_TYPES:
            issues.append(
                _issue("warning", f'Unrecognized term "{mechanism["type"]}"')
            )

    if len(record) > MAX_TXT_STRING_LENGTH:
        chunks = math.ceil(len(record) / MAX_TXT_STRING_LENGTH)
        issues.append(
            _issue(
                "warning",
                f"Record exceeds {MAX_TXT_STRING_LENGTH} characters "
                f"({len(record)} chars). Will be split into {chunks} TXT strings",
            )
        )
    record_bytes = len(record.encode("utf-8"))
    if record_bytes > MAX_UDP_RECORD_BYTES:
        issues.append(
            _issue(
                "warning",
                f"Record is {record_bytes} bytes, more than {MAX_UDP_RECORD_BYTES}. "
                "Some verifiers may not receive it over UDP (RFC 7208 Section 3.4)",
            )
        )

    return issues


def validate_spf_record(record: str) -> ParsedSPFRecord:
    """
    Parses an SPF record and checks its structure, without any DNS lookups

    Args:
        record (str): An SPF record

    Returns:
        dict: The output of :func:`parse_spf_record`, with the issues found
        by :func:`check_spf_rules` appended
    """
    parsed = parse_spf_record(record)
    if parsed["version"] is not None:
        parsed["issues"] += check_spf_rules(record, parsed["mechanisms"])
    return parsed


def _failed_result(domain: str, message: str, ctx: LookupContext) -> SPFResult:
    result: SPFResult = {
        "domain": domain,
        "record": None,
        "version": None,
        "mechanisms": [],
        "lookup_count": ctx.count,
        "issues": [_issue("error", message)],
        "query_time_ms": 0,
    }
    return result


def _expand_mechanism(
    mechanism: SPFMechanism, ctx: LookupContext
) -> Union[SPFMechanism, SPFExpandedMechanism]:
    mechanism_type = mechanism["type"]
    if mechanism_type not in LOOKUP_MECHANISMS:
        return mechanism
    if mechanism_type not in EXPANDABLE_MECHANISMS:
        ctx.consume_lookup()
        return mechanism

    target = mechanism["value"]
    key = _visited_key(target)
    if not key:
        expanded = _failed_result("", "Missing domain for include/redirect", ctx)
    elif key in ctx.visited:
        logging.debug(f"Not following {mechanism_type}:{target}; already visited")
        expanded = _failed_result(
            target, f"Circular reference detected: {target}", ctx
        )
    elif not ctx.consume_lookup():
        expanded = _failed_result(
            target, f"DNS lookup limit exceeded ({ctx.max_lookups})", ctx
        )
    else:
        ctx.visited.add(key)
        expanded = lookup_spf(key, ctx)

    expanded_mechanism: SPFExpandedMechanism = {
        "type": mechanism_type,
        "qualifier": mechanism["qualifier"],
        "value": target,
        "expanded": expanded,
    }
    return expanded_mechanism


def lookup_spf(domain: str, ctx: LookupContext) -> SPFResult:
    """
    Fetches, parses, and checks the SPF record of a domain, then follows its
    ``include`` mechanisms and ``redirect`` modifier

    DNS failures, missing records, loops, and an exhausted lookup budget are
    reported as issues on the affected node; a complete tree is always
    returned.

    Args:
        domain (str): A normalized domain name
        ctx (LookupContext): The shared state of the current expansion tree

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain`` - The domain name
            - ``record`` - The SPF record, or ``None`` if none was found
            - ``version`` - The SPF version, or ``None``
            - ``mechanisms`` - Parsed terms; ``include`` and ``redirect``
              terms carry the ``expanded`` result of their target
            - ``lookup_count`` - The shared DNS lookup count when this node
              was finished
            - ``issues`` - A ``list`` of errors and warnings
            - ``query_time_ms`` - Time spent fetching and parsing this record
    """
    start = time.perf_counter()
    try:
        query = query_spf_record(
            domain,
            resolver=ctx.resolver,
            fallback_resolvers=ctx.fallback_resolvers,
            timeout=ctx.timeout,
            nameservers=ctx.nameservers,
            cache=ctx.cache,
        )
    except SPFRecordNotFound as error:
        logging.debug(f"{domain}: {error}")
        failed = _failed_result(domain, str(error), ctx)
        failed["query_time_ms"] = _elapsed_ms(start)
        return failed

    record = query["record"]
    logging.debug(f"Parsing the SPF record on {domain}: {record}")
    parsed = validate_spf_record(record)
    issues = query["issues"] + parsed["issues"]
    query_time_ms = _elapsed_ms(start)

    # Source order decides which terms are within the lookup limit
    mechanisms = []
    for mechanism in parsed["mechanisms"]:
        mechanisms.append(_expand_mechanism(mechanism, ctx))

    result: SPFResult = {
        "domain": domain,
        "record": record,
        "version": parsed["version"],
        "mechanisms": mechanisms,
        "lookup_count": ctx.count,
        "issues": issues,
        "query_time_ms": query_time_ms,
    }
    return result


def expand_spf_record(
    domain: str,
    *,
    resolver: str = DEFAULT_RESOLVER,
    fallback_resolvers: Optional[Sequence[str]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    cache: Optional[ExpiringDict] = None,
    max_lookups: int = MAX_DNS_LOOKUPS,
) -> SPFResult:
    """
    Retrieves an SPF record and recursively expands it

    Args:
        domain (str): A domain name
        resolver (str): The preferred DNS backend
        fallback_resolvers (list): DNS backends to try when the preferred one fails
        timeout (float): number of seconds to wait for an answer from DNS
        nameservers (list): A list of nameservers for the native backend
        cache (ExpiringDict): Optional DNS answer cache
        max_lookups (int): The DNS lookup limit

    Returns:
        dict: The result tree; see :func:`lookup_spf`
    """
    domain = normalize_domain(domain)
    ctx = LookupContext(
        domain,
        max_lookups=max_lookups,
        resolver=resolver,
        fallback_resolvers=fallback_resolvers,
        timeout=timeout,
        nameservers=nameservers,
        cache=cache,
    )
    result = lookup_spf(domain, ctx)
    if result["lookup_count"] > max_lookups:
        result["issues"].append(
            _issue(
                "error",
                f"Too many DNS lookups: {result['lookup_count']} "
                f"(RFC 7208 allows max {max_lookups})",
            )
        )
    return result


def walk_spf_result(
    result: SPFResult, *, _depth: int = 0, _path: Optional[list[str]] = None
) -> Iterator[tuple[int, list[str], SPFResult]]:
    """
    Yields ``(depth, path, result)`` for every node of a result tree,
    depth first and in source order

    Args:
        result (dict): A result returned by :func:`expand_spf_record`
    """
    path = (_path or []) + [result["domain"]]
    yield _depth, path, result
    for mechanism in result["mechanisms"]:
        expanded = mechanism.get("expanded")
        if expanded is not None:
            yield from walk_spf_result(expanded, _depth=_depth + 1, _path=path)
