# -*- coding: utf-8 -*-
"""Constant values"""

from __future__ import annotations
import platform
import os

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

__version__ = "1.0.0"

OS = platform.system()
OS_RELEASE = platform.release()
USER_AGENT = f"Mozilla/5.0 (({OS} {OS_RELEASE})) checkspf/{__version__}"

RESOLVERS = ("native", "google", "cloudflare")
DEFAULT_RESOLVER = "native"
DEFAULT_FALLBACK_RESOLVERS = ("google", "cloudflare")
DEFAULT_DNS_TIMEOUT = 2.0
MAX_DNS_LOOKUPS = 10

GOOGLE_DOH_URL = "https://dns.google/resolve"
CLOUDFLARE_DOH_URL = "https://cloudflare-dns.com/dns-query"

CACHE_MAX_LEN = 200000
CACHE_MAX_AGE_SECONDS = 1800

env = os.environ

if "DNS_TIMEOUT" in env:
    DEFAULT_DNS_TIMEOUT = float(env["DNS_TIMEOUT"])
if "DNS_RESOLVER" in env:
    DEFAULT_RESOLVER = env["DNS_RESOLVER"].strip().lower()
if "DNS_FALLBACK_RESOLVERS" in env:
    DEFAULT_FALLBACK_RESOLVERS = tuple(
        r.strip().lower() for r in env["DNS_FALLBACK_RESOLVERS"].split(",") if r.strip()
    )
if "MAX_DNS_LOOKUPS" in env:
    MAX_DNS_LOOKUPS = int(env["MAX_DNS_LOOKUPS"])
if "GOOGLE_DOH_URL" in env:
    GOOGLE_DOH_URL = env["GOOGLE_DOH_URL"]
if "CLOUDFLARE_DOH_URL" in env:
    CLOUDFLARE_DOH_URL = env["CLOUDFLARE_DOH_URL"]
if "CACHE_MAX_LEN" in env:
    CACHE_MAX_LEN = int(env["CACHE_MAX_LEN"])
if "CACHE_MAX_AGE_SECONDS" in env:
    CACHE_MAX_AGE_SECONDS = int(env["CACHE_MAX_AGE_SECONDS"])

DNS_CACHE_MAX_LEN = CACHE_MAX_LEN
if "DNS_CACHE_MAX_LEN" in env:
    DNS_CACHE_MAX_LEN = int(env["DNS_CACHE_MAX_LEN"])
DNS_CACHE_MAX_AGE_SECONDS = CACHE_MAX_AGE_SECONDS
if "DNS_CACHE_MAX_AGE_SECONDS" in env:
    DNS_CACHE_MAX_AGE_SECONDS = int(env["DNS_CACHE_MAX_AGE_SECONDS"])
