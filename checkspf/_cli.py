#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Validates SPF records and expands their includes and redirects"""

from __future__ import annotations

import os
from argparse import ArgumentParser

import logging

from checkspf import (
    __version__,
    check_domains,
    results_to_json,
    results_to_csv,
    output_to_file,
)
from checkspf._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_FALLBACK_RESOLVERS,
    DEFAULT_RESOLVER,
    RESOLVERS,
)
from checkspf.resolver import DNS_CACHE

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


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument(
        "domain",
        nargs="+",
        help="one or more domains, or a single path to a "
        "file containing a list of domains",
    )
    arg_parser.add_argument(
        "-r",
        "--resolver",
        choices=RESOLVERS,
        default=DEFAULT_RESOLVER,
        help=f"the DNS resolver to try first (default {DEFAULT_RESOLVER})",
    )
    arg_parser.add_argument(
        "--fallback",
        nargs="*",
        choices=RESOLVERS,
        default=list(DEFAULT_FALLBACK_RESOLVERS),
        help="DNS resolvers to try, in order, when the first one fails "
        f"(default {' '.join(DEFAULT_FALLBACK_RESOLVERS)})",
    )
    arg_parser.add_argument(
        "-f",
        "--format",
        default="json",
        help="specify JSON or CSV screen output format",
    )
    arg_parser.add_argument(
        "-o",
        "--output",
        nargs="+",
        help="one or more file paths to output to "
        "(must end in .json or .csv) "
        "(silences screen output)",
    )
    arg_parser.add_argument(
        "-n",
        "--nameserver",
        nargs="+",
        help="nameservers for the native resolver to query",
    )
    arg_parser.add_argument(
        "-t",
        "--timeout",
        help="number of seconds to wait for an answer from DNS "
        f"(default {DEFAULT_DNS_TIMEOUT})",
        type=float,
        default=DEFAULT_DNS_TIMEOUT,
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "-w",
        "--wait",
        type=float,
        help="number of seconds to wait between checking domains (default 0.0)",
        default=0.0,
    )
    arg_parser.add_argument(
        "--no-cache",
        action="store_true",
        help="do not reuse DNS answers between domains",
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")
    domains = args.domain
    if len(domains) == 1 and os.path.exists(domains[0]):
        with open(domains[0]) as domains_file:
            domains = [
                d for d in domains_file.readlines() if d.strip() and "." in d
            ]

    results = check_domains(
        domains,
        resolver=args.resolver,
        fallback_resolvers=args.fallback,
        nameservers=args.nameserver,
        timeout=args.timeout,
        cache=None if args.no_cache else DNS_CACHE,
        wait=args.wait,
    )

    if args.output is None:
        if args.format.lower() == "csv":
            print(results_to_csv(results))
        else:
            print(results_to_json(results))
    else:
        for path in args.output:
            if path.lower().endswith(".json"):
                output_to_file(path, results_to_json(results))
            elif path.lower().endswith(".csv"):
                output_to_file(path, results_to_csv(results))
            else:
                logging.error(f"Output path {path} must end in .json or .csv")


if __name__ == "__main__":
    _main()
