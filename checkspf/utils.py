# -*- coding: utf-8 -*-
"""DNS and domain name utility functions"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Optional
from collections.abc import Sequence

import dns.exception
import dns.resolver
from dns.nameserver import Nameserver

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

DOMAIN_REGEX = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")
ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")  # includes ZWSP, ZWNJ, ZWJ, BOM
UNDECODABLE_TXT = "Undecodable characters"

# DNS RCODE descriptions used for DNS-over-HTTPS status codes
DNS_STATUS_MESSAGES = {
    1: "Format error",
    2: "Server failure",
    3: "Non-existent domain",
    4: "Not implemented",
    5: "Query refused",
}


class DNSException(Exception):
    """Raised when a general DNS error occurs"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout) and "timeout" in error.kwargs:
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        Exception.__init__(self, str(error))


class DNSExceptionNXDOMAIN(DNSException):
    """Raised when a NXDOMAIN DNS error (RCODE:3) occurs"""


class DNSTimeout(DNSException):
    """Raised when a DNS backend does not answer in time"""


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by trimming it, removing zero-width characters,
    and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    domain = unicodedata.normalize("NFC", domain)
    domain = ZERO_WIDTH_RE.sub("", domain)
    return domain.strip().lower()


def is_valid_domain(domain: str) -> bool:
    """
    Checks if a normalized domain is acceptable for a lookup

    Single character names are accepted as-is.

    Args:
        domain (str): A normalized domain

    Returns:
        bool: ``True`` if the domain can be looked up
    """
    if len(domain) == 0:
        return False
    if len(domain) == 1:
        return True
    return DOMAIN_REGEX.match(domain) is not None


def dns_status_message(status: int) -> str:
    """Returns a human-readable description of a DNS response status code"""
    return DNS_STATUS_MESSAGES.get(status, f"DNS error: {status}")


def query_txt_records(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
) -> list[str]:
    """
    Queries DNS for TXT records using the system (or given) nameservers

    The character-strings of each record are joined into a single string.

    Args:
        domain (str): The domain or subdomain to query about
        nameservers (list): A list of one or more nameservers to use
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): Sets the DNS timeout in seconds

    Returns:
        list: A list of TXT records; empty if the name has no TXT records

    Raises:
        :exc:`checkspf.utils.DNSException`
    """
    domain = normalize_domain(domain)
    if not resolver:
        resolver = dns.resolver.Resolver()
        timeout = float(timeout)
        if nameservers is not None:
            resolver.nameservers = nameservers
        resolver.timeout = timeout
        resolver.lifetime = timeout
    logging.debug(f"Querying {domain} TXT records with the native resolver")
    try:
        answers = resolver.resolve(domain, "TXT", lifetime=timeout)
    except dns.resolver.NXDOMAIN:
        raise DNSExceptionNXDOMAIN(dns_status_message(3))
    except dns.resolver.NoAnswer:
        return []
    except dns.resolver.LifetimeTimeout as e:
        raise DNSTimeout(e)
    except DNSException:
        raise
    except Exception as error:
        raise DNSException(error)

    records = []
    for answer in answers:
        if not answer.strings:
            continue
        try:
            records.append(b"".join(answer.strings).decode())
        except UnicodeDecodeError:
            records.append(UNDECODABLE_TXT)

    return records
