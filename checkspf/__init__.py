# -*- coding: utf-8 -*-

"""Validates SPF records and expands their includes and redirects"""

from __future__ import annotations

import json
import logging
from csv import DictWriter
from io import StringIO
from time import sleep
from typing import Optional, TypedDict, Union
from collections.abc import Sequence

from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

import checkspf._constants
from checkspf._constants import DEFAULT_DNS_TIMEOUT, DEFAULT_RESOLVER
from checkspf.resolver import check_resolver_names
from checkspf.spf import (
    SPFError,
    SPFResult,
    expand_spf_record,
    walk_spf_result,
)
from checkspf.utils import is_valid_domain, normalize_domain

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""


__version__ = checkspf._constants.__version__


class SPFRequestError(SPFError):
    """Raised when an SPF check request is invalid"""


class InvalidDomain(SPFRequestError):
    """Raised when the requested domain is missing or malformed"""


class InvalidResolver(SPFRequestError):
    """Raised when an unknown DNS resolver is requested"""


class SPFCheckSuccess(TypedDict):
    domain: str
    success: bool
    status: int
    resolver: str
    result: SPFResult


class SPFCheckFailure(TypedDict):
    domain: Optional[str]
    success: bool
    status: int
    error: str


SPFCheckResults = Union[SPFCheckSuccess, SPFCheckFailure]


def validate_spf_request(
    domain: Optional[str],
    resolver: Optional[str] = None,
    fallback_resolvers: Optional[Sequence[str]] = None,
) -> tuple[str, str]:
    """
    Validates and normalizes the inputs of an SPF check

    Args:
        domain (str): The requested domain
        resolver (str): The requested DNS resolver
        fallback_resolvers (list): The requested fallback resolvers

    Returns:
        tuple: The normalized domain and the resolver name

    Raises:
        :exc:`checkspf.InvalidDomain`
        :exc:`checkspf.InvalidResolver`
    """
    if domain is None or not domain.strip():
        raise InvalidDomain("Domain is required")
    if resolver is None:
        resolver = DEFAULT_RESOLVER
    try:
        check_resolver_names([resolver] + list(fallback_resolvers or []))
    except ValueError as e:
        raise InvalidResolver(str(e))
    domain = normalize_domain(domain)
    if not is_valid_domain(domain):
        raise InvalidDomain("Invalid domain format")
    return domain, resolver


def check_spf(
    domain: Optional[str],
    *,
    resolver: Optional[str] = None,
    fallback_resolvers: Optional[Sequence[str]] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    cache: Optional[ExpiringDict] = None,
) -> SPFCheckResults:
    """
    Checks the SPF record of a domain and returns a response envelope

    A domain without an SPF record is a successful check; the reason is in
    the issues of the result.

    Args:
        domain (str): A domain name
        resolver (str): The DNS resolver to use first (``native``,
                        ``google``, or ``cloudflare``)
        fallback_resolvers (list): DNS resolvers to try, in order, if the
                                   first one fails
        nameservers (list): A list of nameservers for the native resolver
        timeout (float): number of seconds to wait for an answer from DNS
        cache (ExpiringDict): Optional DNS answer cache

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain`` - The normalized domain
            - ``success`` - ``True`` if the check ran
            - ``status`` - An HTTP-style status code (200, 400, or 500)
            - ``resolver`` - The DNS resolver used first
            - ``result`` - The result tree of
              :func:`checkspf.spf.expand_spf_record`

        If the request is invalid or the check fails unexpectedly, ``result``
        and ``resolver`` are replaced by an ``error`` message.
    """
    try:
        domain, resolver = validate_spf_request(domain, resolver, fallback_resolvers)
    except SPFRequestError as error:
        invalid_request: SPFCheckFailure = {
            "domain": domain,
            "success": False,
            "status": 400,
            "error": str(error),
        }
        return invalid_request

    logging.debug(f"Checking SPF: {domain}")
    try:
        result = expand_spf_record(
            domain,
            resolver=resolver,
            fallback_resolvers=fallback_resolvers,
            timeout=timeout,
            nameservers=nameservers,
            cache=cache,
        )
    except Exception as error:
        logging.error(f"SPF lookup failed for {domain}: {error}")
        failure: SPFCheckFailure = {
            "domain": domain,
            "success": False,
            "status": 500,
            "error": str(error) or "SPF lookup failed",
        }
        return failure

    success: SPFCheckSuccess = {
        "domain": domain,
        "success": True,
        "status": 200,
        "resolver": resolver,
        "result": result,
    }
    return success


def check_domains(
    domains: Sequence[str],
    *,
    resolver: Optional[str] = None,
    fallback_resolvers: Optional[Sequence[str]] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    cache: Optional[ExpiringDict] = None,
    wait: float = 0.0,
) -> list[SPFCheckResults]:
    """
    Checks the SPF records of the given domains

    Duplicate and blank domains are skipped; results are sorted by domain.

    Args:
        domains (list): A list of domains to check
        resolver (str): The DNS resolver to use first
        fallback_resolvers (list): DNS resolvers to try if the first one fails
        nameservers (list): A list of nameservers for the native resolver
        timeout (float): number of seconds to wait for an answer from DNS
        cache (ExpiringDict): Optional DNS answer cache shared by the checks
        wait (float): number of seconds to wait between processing domains

    Returns:
        list: A list of :func:`check_spf` results
    """
    domains = sorted(
        set(
            map(
                lambda d: normalize_domain(d.rstrip(".\r\n").strip().split(",")[0]),
                domains,
            )
        )
    )
    results = []
    for domain in domains:
        if domain == "":
            continue
        results.append(
            check_spf(
                domain,
                resolver=resolver,
                fallback_resolvers=fallback_resolvers,
                nameservers=nameservers,
                timeout=timeout,
                cache=cache,
            )
        )
        if wait > 0.0:
            logging.debug(f"Sleeping for {wait} seconds")
            sleep(wait)

    return results


def results_to_json(
    results: Union[SPFCheckResults, Sequence[SPFCheckResults]],
) -> str:
    """
    Converts a check result or list of results to a JSON string

    Args:
        results (dict): A result or list of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2)


CSV_FIELDS = [
    "domain",
    "success",
    "error",
    "depth",
    "path",
    "spf_domain",
    "record",
    "version",
    "mechanisms",
    "lookup_count",
    "query_time_ms",
    "errors",
    "warnings",
]


def results_to_csv_rows(
    results: Union[SPFCheckResults, Sequence[SPFCheckResults]],
) -> list[dict]:
    """
    Flattens check results into CSV row dictionaries, one row for each
    domain in each result tree

    Args:
        results (dict): A result or list of results

    Returns:
        list: A list of CSV row dictionaries
    """
    rows = []

    if isinstance(results, dict):
        results = [results]

    for result in results:
        if not result["success"]:
            rows.append(
                {
                    "domain": result["domain"],
                    "success": False,
                    "error": result["error"],
                }
            )
            continue
        for depth, path, node in walk_spf_result(result["result"]):
            issues = node["issues"]
            rows.append(
                {
                    "domain": result["domain"],
                    "success": True,
                    "depth": depth,
                    "path": " -> ".join(path),
                    "spf_domain": node["domain"],
                    "record": node["record"],
                    "version": node["version"],
                    "mechanisms": len(node["mechanisms"]),
                    "lookup_count": node["lookup_count"],
                    "query_time_ms": node["query_time_ms"],
                    "errors": "|".join(
                        i["message"] for i in issues if i["severity"] == "error"
                    ),
                    "warnings": "|".join(
                        i["message"] for i in issues if i["severity"] == "warning"
                    ),
                }
            )
    return rows


def results_to_csv(
    results: Union[SPFCheckResults, Sequence[SPFCheckResults]],
) -> str:
    """
    Converts check results to CSV

    Args:
        results (dict): A result or list of results

    Returns:
        str: A CSV of results
    """
    output = StringIO(newline="\n")
    writer = DictWriter(output, fieldnames=CSV_FIELDS)
    writer.writeheader()
    writer.writerows(results_to_csv_rows(results))
    output.flush()

    return output.getvalue()


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON or CSV text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)
