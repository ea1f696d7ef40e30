# -*- coding: utf-8 -*-
"""TXT record resolution with native DNS and DNS-over-HTTPS backends"""

from __future__ import annotations

import logging
import platform
import re
import threading
from typing import Optional, TypedDict
from collections.abc import Callable, Sequence

import requests
import timeout_decorator
from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

from checkspf._constants import (
    CLOUDFLARE_DOH_URL,
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_FALLBACK_RESOLVERS,
    DEFAULT_RESOLVER,
    DNS_CACHE_MAX_AGE_SECONDS,
    DNS_CACHE_MAX_LEN,
    GOOGLE_DOH_URL,
    RESOLVERS,
    USER_AGENT,
)
from checkspf.utils import (
    DNSException,
    DNSExceptionNXDOMAIN,
    DNSTimeout,
    dns_status_message,
    normalize_domain,
    query_txt_records,
)

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

DNS_CACHE = ExpiringDict(
    max_len=DNS_CACHE_MAX_LEN, max_age_seconds=DNS_CACHE_MAX_AGE_SECONDS
)

TXT_RECORD_TYPE = 16
DOH_ACCEPT = "application/dns-json"

_OUTER_QUOTES_REGEX = re.compile(r'^"|"$')
_CHUNK_BOUNDARY_REGEX = re.compile(r'"\s*"')


class DoHAnswer(TypedDict):
    name: str
    type: int
    TTL: int
    data: str


class DoHResponse(TypedDict, total=False):
    Status: int
    Answer: list[DoHAnswer]


def _get_timeout_method() -> bool:
    """
    Determine the best timeout method based on platform and environment.

    Returns:
        bool: True to use signals, False to use multiprocessing
    """
    if platform.system() == "Windows":
        return False

    # SIGALRM can only be handled by the main thread
    return threading.current_thread() is threading.main_thread()


def join_txt_chunks(data: str) -> str:
    """
    Converts the presentation form of a TXT answer into a single string

    ``"v=spf1 ip4:192.0.2.1 " "-all"`` becomes ``v=spf1 ip4:192.0.2.1 -all``

    Args:
        data (str): TXT record data as returned by a DoH JSON API

    Returns:
        str: The unquoted, concatenated record
    """
    data = _OUTER_QUOTES_REGEX.sub("", data)
    return _CHUNK_BOUNDARY_REGEX.sub("", data)


def _query_doh(
    url: str,
    params: dict[str, str],
    provider: str,
    *,
    timeout: float,
    session: Optional[requests.Session] = None,
) -> list[str]:
    if session is None:
        with requests.Session() as new_session:
            new_session.headers.update({"User-Agent": USER_AGENT})
            return _query_doh(
                url, params, provider, timeout=timeout, session=new_session
            )
    logging.debug(f"Querying {params['name']} TXT records with {provider} DoH")
    try:
        response = session.get(
            url,
            params=params,
            headers={"Accept": DOH_ACCEPT},
            timeout=timeout,
        )
    except requests.Timeout:
        raise DNSTimeout(f"{provider} DNS request timed out")
    except requests.RequestException as e:
        raise DNSException(f"{provider} DNS request failed: {e}")

    if not response.ok:
        raise DNSException(f"{provider} DNS request failed: {response.reason}")

    invalid_response = DNSException(f"{provider} DNS returned an invalid response")
    try:
        data: DoHResponse = response.json()
    except ValueError:
        raise invalid_response
    if not isinstance(data, dict):
        raise invalid_response

    status = data.get("Status", 0)
    if not isinstance(status, int):
        raise invalid_response
    if status == 3:
        raise DNSExceptionNXDOMAIN(dns_status_message(status))
    if status != 0:
        raise DNSException(dns_status_message(status))

    answers = data.get("Answer") or []
    if not isinstance(answers, list):
        raise invalid_response
    records = []
    for answer in answers:
        if not isinstance(answer, dict):
            raise invalid_response
        if answer.get("type") != TXT_RECORD_TYPE:
            continue
        if not isinstance(answer.get("data"), str):
            raise invalid_response
        records.append(join_txt_chunks(answer["data"]))
    return records


def resolve_with_google_doh(
    domain: str,
    *,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> list[str]:
    """
    Resolves TXT records using Google's DNS-over-HTTPS JSON API

    Args:
        domain (str): A domain name
        timeout (float): HTTP timeout in seconds
        session (requests.Session): An optional HTTP session to use

    Returns:
        list: A list of TXT records

    Raises:
        :exc:`checkspf.utils.DNSException`
    """
    params = {"name": domain, "type": str(TXT_RECORD_TYPE), "cd": "true"}
    return _query_doh(
        GOOGLE_DOH_URL, params, "Google", timeout=timeout, session=session
    )


def resolve_with_cloudflare_doh(
    domain: str,
    *,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> list[str]:
    """
    Resolves TXT records using Cloudflare's DNS-over-HTTPS JSON API

    Args:
        domain (str): A domain name
        timeout (float): HTTP timeout in seconds
        session (requests.Session): An optional HTTP session to use

    Returns:
        list: A list of TXT records

    Raises:
        :exc:`checkspf.utils.DNSException`
    """
    params = {"name": domain, "type": "TXT", "cd": "true"}
    return _query_doh(
        CLOUDFLARE_DOH_URL, params, "Cloudflare", timeout=timeout, session=session
    )


def resolve_with_native(
    domain: str,
    *,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
) -> list[str]:
    """Resolves TXT records with dnspython and the system nameservers"""
    return query_txt_records(domain, nameservers=nameservers, timeout=timeout)


BACKENDS: dict[str, Callable[..., list[str]]] = {
    "native": resolve_with_native,
    "google": resolve_with_google_doh,
    "cloudflare": resolve_with_cloudflare_doh,
}


def _resolve_native_with_timeout(
    domain: str,
    *,
    timeout: float,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
) -> list[str]:
    # The first of the answer and the timer wins; a query that is still
    # running when the timer fires is abandoned.
    race = timeout_decorator.timeout(
        timeout,
        use_signals=_get_timeout_method(),
        timeout_exception=DNSTimeout,  # pyright: ignore[reportArgumentType]
        exception_message="DNS timeout",
    )(_query_native)
    return race(domain, nameservers, timeout)


def _query_native(
    domain: str,
    nameservers: Optional[Sequence[str | Nameserver]],
    dns_timeout: float,
) -> list[str]:
    # timeout_decorator takes over any "timeout" keyword argument
    return BACKENDS["native"](domain, timeout=dns_timeout, nameservers=nameservers)


def _resolve_with(
    backend: str,
    domain: str,
    *,
    timeout: float,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
) -> list[str]:
    if backend == "native":
        return _resolve_native_with_timeout(
            domain, timeout=timeout, nameservers=nameservers
        )
    return BACKENDS[backend](domain, timeout=timeout)


def check_resolver_names(names: Sequence[str]) -> None:
    """
    Raises ``ValueError`` if any of the given resolver names is unknown
    """
    for name in names:
        if name not in RESOLVERS:
            raise ValueError(
                f"Invalid resolver: {name}. Valid options: {', '.join(RESOLVERS)}"
            )


def resolve_txt(
    domain: str,
    *,
    backend: str = DEFAULT_RESOLVER,
    fallback_backends: Optional[Sequence[str]] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    cache: Optional[ExpiringDict] = None,
) -> list[str]:
    """
    Resolves TXT records, falling back to other backends on failure

    The primary backend is tried first, then each fallback backend in order.
    Every backend is attempted at most once.

    Args:
        domain (str): A domain name
        backend (str): The preferred backend (``native``, ``google``,
                       or ``cloudflare``)
        fallback_backends (list): Backends to try, in order, after the
                                  preferred backend fails
        timeout (float): Number of seconds to wait for each backend
        nameservers (list): Nameservers for the native backend
        cache (ExpiringDict): Optional cache storage for successful answers

    Returns:
        list: A list of TXT records

    Raises:
        :exc:`checkspf.utils.DNSException`
    """
    domain = normalize_domain(domain)
    if fallback_backends is None:
        fallback_backends = DEFAULT_FALLBACK_RESOLVERS
    order = list(dict.fromkeys([backend, *fallback_backends]))
    check_resolver_names(order)

    if cache is not None:
        records = cache.get(domain)
        if isinstance(records, list):
            return list(records)

    last_error: Optional[DNSException] = None
    for name in order:
        try:
            records = _resolve_with(
                name, domain, timeout=timeout, nameservers=nameservers
            )
        except DNSException as e:
            logging.debug(f"The {name} resolver failed for {domain}: {e}")
            last_error = e
            continue
        if cache is not None:
            cache[domain] = records
        return records

    if len(order) == 1 and last_error is not None:
        raise last_error
    raise last_error.__class__(
        f"All DNS resolvers failed ({', '.join(order)}): {last_error}"
    )
