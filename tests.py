#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import csv
import io
import json
import math
import os
import threading
import time
import unittest
from unittest import mock

import dns.resolver
import requests
from expiringdict import ExpiringDict

import checkspf
import checkspf._constants
import checkspf.resolver
import checkspf.spf
import checkspf.utils
from checkspf.utils import DNSException, DNSExceptionNXDOMAIN, DNSTimeout


class FakeDNS(object):
    """Answers TXT queries from a dictionary and records every query"""

    def __init__(self, zone):
        self.zone = zone
        self.queries = []
        self.options = []

    def __call__(self, domain, **kwargs):
        self.queries.append(domain)
        self.options.append(kwargs)
        records = self.zone.get(domain)
        if records is None:
            raise DNSExceptionNXDOMAIN("Non-existent domain")
        if isinstance(records, Exception):
            raise records
        return list(records)


def fake_dns(zone):
    return mock.patch("checkspf.spf.resolve_txt", FakeDNS(zone))


def doh_session(payload, ok=True, reason="OK"):
    response = mock.Mock(ok=ok, reason=reason)
    response.json.return_value = payload
    session = mock.Mock()
    session.get.return_value = response
    return session


def without_timing(result):
    result = dict(result)
    del result["query_time_ms"]
    mechanisms = []
    for mechanism in result["mechanisms"]:
        mechanism = dict(mechanism)
        if "expanded" in mechanism:
            mechanism["expanded"] = without_timing(mechanism["expanded"])
        mechanisms.append(mechanism)
    result["mechanisms"] = mechanisms
    return result


def messages(issues, severity=None):
    return [i["message"] for i in issues if severity in (None, i["severity"])]


NESTED_ZONE = {
    "example.com": ["v=spf1 include:a.example include:b.example -all"],
    "a.example": ["v=spf1 mx a -all"],
    "b.example": ["v=spf1 include:c.example ~all"],
    "c.example": ["v=spf1 exists:%{i}._spf.c.example -all"],
}


class Test(unittest.TestCase):
    def testParseExampleRecord(self):
        """A typical record parses into ordered mechanisms without issues"""
        record = "v=spf1 ip4:192.0.2.0/24 include:_spf.example.com -all"

        parsed = checkspf.spf.validate_spf_record(record)

        self.assertEqual(parsed["version"], "spf1")
        self.assertEqual(
            parsed["mechanisms"],
            [
                {"type": "ip4", "qualifier": "+", "value": "192.0.2.0/24"},
                {"type": "include", "qualifier": "+", "value": "_spf.example.com"},
                {"type": "all", "qualifier": "-", "value": ""},
            ],
        )
        self.assertEqual(parsed["issues"], [])

    def testMissingVersionPrefix(self):
        """A record without v=spf1 has no version and no mechanisms"""
        for parse in (
            checkspf.spf.parse_spf_record,
            checkspf.spf.validate_spf_record,
        ):
            parsed = parse("spf1 -all")
            self.assertIsNone(parsed["version"])
            self.assertEqual(parsed["mechanisms"], [])
            self.assertEqual(len(parsed["issues"]), 1)
            self.assertEqual(parsed["issues"][0]["severity"], "error")
            self.assertIn("Invalid version", parsed["issues"][0]["message"])
            self.assertIn('"spf1"', parsed["issues"][0]["message"])

    def testEmptyRecord(self):
        parsed = checkspf.spf.parse_spf_record("   ")
        self.assertEqual(messages(parsed["issues"], "error"), ["Empty SPF record"])

    def testUppercaseSPFMechanism(self):
        """Treat uppercase SPF mechanisms as valid"""
        parsed = checkspf.spf.validate_spf_record("V=SPF1 IP4:147.75.8.208 -ALL")

        self.assertEqual([m["type"] for m in parsed["mechanisms"]], ["ip4", "all"])
        self.assertEqual(parsed["mechanisms"][0]["value"], "147.75.8.208")
        self.assertEqual(parsed["issues"], [])

    def testQualifiers(self):
        """Qualifiers are kept, and default to +"""
        parsed = checkspf.spf.parse_spf_record(
            "v=spf1 +a ?mx ~exists:x.example include:y.example -all"
        )
        self.assertEqual(
            [m["qualifier"] for m in parsed["mechanisms"]],
            ["+", "?", "~", "+", "-"],
        )

    def testTermSeparators(self):
        """Values are split on the first colon, slash, or equals sign"""
        parsed = checkspf.spf.parse_spf_record(
            "v=spf1 a/24 mx:mail.example.com/28 ip6:2001:db8::/32 "
            "redirect=_spf.example.com"
        )
        self.assertEqual(
            [(m["type"], m["value"]) for m in parsed["mechanisms"]],
            [
                ("a", "/24"),
                ("mx", "mail.example.com/28"),
                ("ip6", "2001:db8::/32"),
                ("redirect", "_spf.example.com"),
            ],
        )

    def testUnknownTermsPassThrough(self):
        """Unknown terms are kept as opaque mechanisms"""
        parsed = checkspf.spf.validate_spf_record("v=spf1 MS=ABC123 foo -all")

        self.assertEqual(
            [(m["type"], m["value"]) for m in parsed["mechanisms"]],
            [("ms", "ABC123"), ("foo", ""), ("all", "")],
        )
        self.assertEqual(
            messages(parsed["issues"], "warning"),
            ['Unrecognized term "ms"', 'Unrecognized term "foo"'],
        )

    def testPTRDeprecated(self):
        parsed = checkspf.spf.parse_spf_record("v=spf1 ptr:example.com -all")
        self.assertEqual(len(parsed["issues"]), 1)
        self.assertEqual(parsed["issues"][0]["severity"], "warning")
        self.assertIn("deprecated", parsed["issues"][0]["message"])

    def testParsingIsDeterministic(self):
        record = "v=spf1 redirect=a.example redirect=b.example ptr -all"
        first = checkspf.spf.validate_spf_record(record)
        first["mechanisms"].append({"type": "a", "qualifier": "+", "value": ""})
        second = checkspf.spf.validate_spf_record(record)
        third = checkspf.spf.validate_spf_record(record)

        self.assertEqual(second, third)
        self.assertEqual(len(second["mechanisms"]), 4)

    def testMissingAll(self):
        parsed = checkspf.spf.validate_spf_record("v=spf1 ip4:192.0.2.1")
        self.assertEqual(len(parsed["issues"]), 1)
        self.assertEqual(parsed["issues"][0]["severity"], "warning")
        self.assertIn('"-all"', parsed["issues"][0]["message"])

    def testAllNotLast(self):
        parsed = checkspf.spf.validate_spf_record("v=spf1 -all ip4:192.0.2.1")
        self.assertEqual(
            messages(parsed["issues"]),
            ['"all" mechanism should be the last term in the record'],
        )

    def testDuplicateAll(self):
        parsed = checkspf.spf.validate_spf_record("v=spf1 ~all -all")
        self.assertIn(
            'The "all" mechanism can only be used once',
            messages(parsed["issues"], "error"),
        )

    def testMultipleRedirects(self):
        """Two redirect modifiers are an error regardless of other content"""
        parsed = checkspf.spf.validate_spf_record(
            "v=spf1 ip4:192.0.2.1 redirect=a.example redirect=b.example"
        )
        errors = messages(parsed["issues"], "error")
        self.assertEqual(len(errors), 1)
        self.assertIn("multiple redirect modifiers", errors[0].lower())

    def testRedirectWithAll(self):
        parsed = checkspf.spf.validate_spf_record("v=spf1 redirect=a.example -all")
        warnings = messages(parsed["issues"], "warning")
        self.assertEqual(len(warnings), 1)
        self.assertIn('"redirect" is ignored', warnings[0])

    def testMultipleExp(self):
        parsed = checkspf.spf.validate_spf_record(
            "v=spf1 -all exp=a.example exp=b.example"
        )
        self.assertIn(
            "Multiple exp modifiers found (only one allowed)",
            messages(parsed["issues"], "error"),
        )

    def testInvalidIPValues(self):
        """Invalid ip4 and ip6 values are errors"""
        parsed = checkspf.spf.validate_spf_record(
            "v=spf1 ip4:78.46.96.236/99 ip6:78.46.96.236 ip4:1200::1 "
            "ip4:relay.mailchannels.net ip6:2001:db8::/32 -all"
        )
        self.assertEqual(len(messages(parsed["issues"], "error")), 4)

    def testLongRecord(self):
        """Records over 255 characters name the number of TXT strings"""
        record = (
            "v=spf1 "
            + " ".join(f"ip4:192.0.2.{i}" for i in range(1, 30))
            + " -all"
        )
        chunks = math.ceil(len(record) / 255)

        parsed = checkspf.spf.validate_spf_record(record)

        warnings = messages(parsed["issues"], "warning")
        self.assertEqual(len(warnings), 1)
        self.assertIn(f"({len(record)} chars)", warnings[0])
        self.assertIn(f"split into {chunks} TXT strings", warnings[0])

    def testOversizedRecord(self):
        record = (
            "v=spf1 "
            + " ".join(f"ip4:198.51.100.{i}" for i in range(1, 60))
            + " -all"
        )
        parsed = checkspf.spf.validate_spf_record(record)
        self.assertTrue(any("bytes" in w for w in messages(parsed["issues"])))

    def testExpandIncludes(self):
        """Includes are expanded and counted"""
        zone = {
            "example.com": ["v=spf1 ip4:192.0.2.0/24 include:_spf.example.com -all"],
            "_spf.example.com": ["v=spf1 ip4:198.51.100.0/24 ~all"],
        }
        with fake_dns(zone) as dns_server:
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(dns_server.queries, ["example.com", "_spf.example.com"])
        self.assertEqual(result["domain"], "example.com")
        self.assertEqual(result["version"], "spf1")
        self.assertEqual(result["lookup_count"], 1)
        self.assertEqual(result["issues"], [])
        self.assertNotIn("expanded", result["mechanisms"][0])
        self.assertNotIn("expanded", result["mechanisms"][2])
        include = result["mechanisms"][1]["expanded"]
        self.assertEqual(include["domain"], "_spf.example.com")
        self.assertEqual(include["record"], "v=spf1 ip4:198.51.100.0/24 ~all")
        self.assertEqual(include["lookup_count"], 1)
        self.assertIsInstance(result["query_time_ms"], int)

    def testNestedLookupCounts(self):
        """Nested results show the shared lookup count when they finished"""
        with fake_dns(NESTED_ZONE):
            result = checkspf.spf.expand_spf_record("example.com")

        a = result["mechanisms"][0]["expanded"]
        b = result["mechanisms"][1]["expanded"]
        c = b["mechanisms"][0]["expanded"]
        self.assertEqual(a["lookup_count"], 3)
        self.assertEqual(c["lookup_count"], 6)
        self.assertEqual(b["lookup_count"], 6)
        self.assertEqual(result["lookup_count"], 6)

        for depth, path, node in checkspf.spf.walk_spf_result(result):
            self.assertEqual(len(path), depth + 1)
            self.assertLessEqual(node["lookup_count"], result["lookup_count"])

    def testLookupMechanismsAreCountedNotExpanded(self):
        zone = {"example.com": ["v=spf1 a mx ptr exists:x.example ip4:192.0.2.1 -all"]}
        with fake_dns(zone) as dns_server:
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(dns_server.queries, ["example.com"])
        self.assertEqual(result["lookup_count"], 4)
        for mechanism in result["mechanisms"]:
            self.assertNotIn("expanded", mechanism)

    def testSPFIncludeLoop(self):
        """An include cycle is reported on the mechanism that closes it"""
        zone = {
            "a.example": ["v=spf1 include:b.example -all"],
            "b.example": ["v=spf1 include:a.example -all"],
        }
        with fake_dns(zone) as dns_server:
            result = checkspf.spf.expand_spf_record("a.example")

        self.assertEqual(dns_server.queries, ["a.example", "b.example"])
        b = result["mechanisms"][0]["expanded"]
        loop = b["mechanisms"][0]["expanded"]
        self.assertIsNone(loop["record"])
        self.assertEqual(loop["mechanisms"], [])
        self.assertEqual(
            loop["issues"],
            [{"severity": "error", "message": "Circular reference detected: a.example"}],
        )
        self.assertEqual(loop["lookup_count"], 1)
        self.assertEqual(result["lookup_count"], 1)

    def testSelfInclude(self):
        zone = {"example.com": ['v=spf1 include:Example.com -all']}
        with fake_dns(zone) as dns_server:
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(dns_server.queries, ["example.com"])
        self.assertEqual(result["lookup_count"], 0)
        loop = result["mechanisms"][0]["expanded"]
        self.assertEqual(
            messages(loop["issues"]), ["Circular reference detected: Example.com"]
        )

    def testSelfIncludeWithTrailingDot(self):
        """A fully qualified name is the same domain as its plain form"""
        zone = {"example.com": ["v=spf1 include:example.com. -all"]}
        with fake_dns(zone) as dns_server:
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(dns_server.queries, ["example.com"])
        self.assertEqual(result["lookup_count"], 0)
        self.assertEqual(
            messages(result["mechanisms"][0]["expanded"]["issues"]),
            ["Circular reference detected: example.com."],
        )

    def testSPFRecordNotFound(self):
        with fake_dns({"example.com": []}):
            with self.assertRaises(checkspf.spf.SPFRecordNotFound) as context:
                checkspf.spf.query_spf_record("example.com")

        self.assertEqual(context.exception.domain, "example.com")
        self.assertEqual(str(context.exception), "No TXT records found")

    def testDuplicateIncludeIsFetchedOnce(self):
        zone = {
            "example.com": ["v=spf1 include:_spf.example.net include:_spf.example.net -all"],
            "_spf.example.net": ["v=spf1 -all"],
        }
        with fake_dns(zone) as dns_server:
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(dns_server.queries, ["example.com", "_spf.example.net"])
        self.assertEqual(result["lookup_count"], 1)
        self.assertEqual(
            messages(result["mechanisms"][1]["expanded"]["issues"]),
            ["Circular reference detected: _spf.example.net"],
        )

    def testTooManySPFDNSLookups(self):
        """Includes past the lookup limit are not fetched"""
        includes = " ".join(f"include:i{n}.ex" for n in range(1, 13))
        zone = {"example.com": [f"v=spf1 {includes} -all"]}
        for n in range(1, 13):
            zone[f"i{n}.ex"] = ["v=spf1 -all"]

        with fake_dns(zone) as dns_server:
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(len(dns_server.queries), 11)
        self.assertNotIn("i11.ex", dns_server.queries)
        self.assertEqual(
            result["mechanisms"][9]["expanded"]["record"], "v=spf1 -all"
        )
        for mechanism in result["mechanisms"][10:12]:
            self.assertEqual(
                messages(mechanism["expanded"]["issues"]),
                ["DNS lookup limit exceeded (10)"],
            )
        self.assertEqual(result["lookup_count"], 11)
        self.assertEqual(
            messages(result["issues"], "error"),
            ["Too many DNS lookups: 11 (RFC 7208 allows max 10)"],
        )

    def testLookupCounterStopsAfterLimit(self):
        """The counted lookups never exceed the limit plus one"""
        zone = {"example.com": ["v=spf1 " + "a " * 15 + "-all"]}
        with fake_dns(zone):
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(result["lookup_count"], 11)
        self.assertIn(
            "Too many DNS lookups: 11 (RFC 7208 allows max 10)",
            messages(result["issues"]),
        )

    def testNoTXTRecords(self):
        with fake_dns({"example.com": []}):
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertIsNone(result["record"])
        self.assertIsNone(result["version"])
        self.assertEqual(result["mechanisms"], [])
        self.assertEqual(
            result["issues"], [{"severity": "error", "message": "No TXT records found"}]
        )

    def testNoSPFRecord(self):
        zone = {"example.com": ["google-site-verification=abc", "MS=ms12345"]}
        with fake_dns(zone):
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertIsNone(result["record"])
        self.assertEqual(
            messages(result["issues"]), ["No SPF record found among 2 TXT records"]
        )

    def testDNSFailure(self):
        zone = {"example.com": DNSException("Server failure")}
        with fake_dns(zone):
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertIsNone(result["record"])
        self.assertEqual(
            messages(result["issues"]), ["DNS lookup failed: Server failure"]
        )

    def testIncludeMissingSPF(self):
        """A failed include is counted and reported on its own node"""
        zone = {"example.com": ["v=spf1 include:example.doesnotexist ~all"]}
        with fake_dns(zone):
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(result["lookup_count"], 1)
        self.assertEqual(result["issues"], [])
        include = result["mechanisms"][0]["expanded"]
        self.assertEqual(include["domain"], "example.doesnotexist")
        self.assertEqual(
            messages(include["issues"]), ["DNS lookup failed: Non-existent domain"]
        )

    def testIncludeWithoutDomain(self):
        zone = {"example.com": ["v=spf1 include: -all"]}
        with fake_dns(zone) as dns_server:
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(dns_server.queries, ["example.com"])
        self.assertEqual(result["lookup_count"], 0)
        include = result["mechanisms"][0]["expanded"]
        self.assertEqual(include["domain"], "")
        self.assertEqual(
            messages(include["issues"]), ["Missing domain for include/redirect"]
        )

    def testRedirectExpanded(self):
        zone = {
            "example.com": ["v=spf1 redirect=_spf.example.com"],
            "_spf.example.com": ["v=spf1 ip4:192.0.2.0/24 -all"],
        }
        with fake_dns(zone):
            result = checkspf.spf.expand_spf_record("example.com")

        redirect = result["mechanisms"][0]
        self.assertEqual(redirect["type"], "redirect")
        self.assertEqual(redirect["expanded"]["record"], "v=spf1 ip4:192.0.2.0/24 -all")
        self.assertEqual(result["lookup_count"], 1)

    def testMultipleSPFRecords(self):
        zone = {"example.com": ["V=SPF1 -all", "v=spf1 ~all"]}
        with fake_dns(zone):
            result = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(result["record"], "V=SPF1 -all")
        self.assertEqual(result["mechanisms"][0]["qualifier"], "-")
        self.assertTrue(messages(result["issues"], "error")[0].startswith("Multiple SPF"))

    def testRevalidationIsStable(self):
        with fake_dns(NESTED_ZONE):
            first = checkspf.spf.expand_spf_record("example.com")
            second = checkspf.spf.expand_spf_record("example.com")

        self.assertEqual(without_timing(first), without_timing(second))

    def testResolverOptionsArePassedThrough(self):
        with fake_dns({"example.com": ["v=spf1 -all"]}) as dns_server:
            checkspf.spf.expand_spf_record(
                "example.com",
                resolver="google",
                fallback_resolvers=["cloudflare"],
                timeout=5.0,
            )

        options = dns_server.options[0]
        self.assertEqual(options["backend"], "google")
        self.assertEqual(options["fallback_backends"], ["cloudflare"])
        self.assertEqual(options["timeout"], 5.0)

    def testJoinTXTChunks(self):
        self.assertEqual(
            checkspf.resolver.join_txt_chunks('"v=spf1 ip4:192.0.2.1 " "-all"'),
            "v=spf1 ip4:192.0.2.1 -all",
        )
        self.assertEqual(checkspf.resolver.join_txt_chunks('"v=spf1 -all"'), "v=spf1 -all")

    def testGoogleDoH(self):
        session = doh_session(
            {
                "Status": 0,
                "Answer": [
                    {"name": "example.com.", "type": 5, "TTL": 60, "data": "x.example."},
                    {
                        "name": "example.com.",
                        "type": 16,
                        "TTL": 60,
                        "data": '"v=spf1 include:_spf.example.com " "-all"',
                    },
                ],
            }
        )

        records = checkspf.resolver.resolve_with_google_doh(
            "example.com", session=session
        )

        self.assertEqual(records, ["v=spf1 include:_spf.example.com -all"])
        args, kwargs = session.get.call_args
        self.assertEqual(args[0], checkspf._constants.GOOGLE_DOH_URL)
        self.assertEqual(kwargs["params"]["type"], "16")
        self.assertEqual(kwargs["headers"]["Accept"], "application/dns-json")

    def testCloudflareDoH(self):
        session = doh_session({"Status": 0})

        records = checkspf.resolver.resolve_with_cloudflare_doh(
            "example.com", session=session
        )

        self.assertEqual(records, [])
        args, kwargs = session.get.call_args
        self.assertEqual(args[0], checkspf._constants.CLOUDFLARE_DOH_URL)
        self.assertEqual(kwargs["params"]["type"], "TXT")

    def testDoHStatusCodes(self):
        expected = {
            1: "Format error",
            2: "Server failure",
            3: "Non-existent domain",
            4: "Not implemented",
            5: "Query refused",
            9: "DNS error: 9",
        }
        for status, message in expected.items():
            session = doh_session({"Status": status})
            with self.assertRaises(DNSException) as context:
                checkspf.resolver.resolve_with_google_doh("example.com", session=session)
            self.assertEqual(str(context.exception), message)
            if status == 3:
                self.assertIsInstance(context.exception, DNSExceptionNXDOMAIN)

    def testDoHHTTPErrors(self):
        session = doh_session({}, ok=False, reason="Bad Gateway")
        with self.assertRaises(DNSException) as context:
            checkspf.resolver.resolve_with_google_doh("example.com", session=session)
        self.assertEqual(str(context.exception), "Google DNS request failed: Bad Gateway")

        session = mock.Mock()
        session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(DNSException) as context:
            checkspf.resolver.resolve_with_cloudflare_doh("example.com", session=session)
        self.assertIn("Cloudflare DNS request failed", str(context.exception))

    def testDoHInvalidResponses(self):
        """Malformed DoH answers are DNS errors"""
        payloads = [
            ["not", "a", "dict"],
            {"Status": "0"},
            {"Status": 0, "Answer": {"type": 16}},
            {"Status": 0, "Answer": ["v=spf1 -all"]},
            {"Status": 0, "Answer": [{"type": 16}]},
            {"Status": 0, "Answer": [{"type": 16, "data": None}]},
        ]
        for payload in payloads:
            session = doh_session(payload)
            with self.assertRaises(DNSException) as context:
                checkspf.resolver.resolve_with_google_doh(
                    "example.com", session=session
                )
            self.assertEqual(
                str(context.exception), "Google DNS returned an invalid response"
            )

        session = doh_session({})
        session.get.return_value.json.side_effect = ValueError("No JSON")
        with self.assertRaises(DNSException) as context:
            checkspf.resolver.resolve_with_cloudflare_doh(
                "example.com", session=session
            )
        self.assertEqual(
            str(context.exception), "Cloudflare DNS returned an invalid response"
        )

    def testCheckSPFMalformedDoHAnswer(self):
        """A malformed answer is reported on the node, not as a failed check"""
        with mock.patch("checkspf.resolver.requests.Session") as session_class:
            session_class.return_value.__enter__.return_value = doh_session(
                {"Status": 0, "Answer": [{"type": 16}]}
            )
            results = checkspf.check_spf(
                "example.com", resolver="google", fallback_resolvers=[]
            )

        self.assertTrue(results["success"])
        self.assertEqual(results["status"], 200)
        self.assertEqual(
            messages(results["result"]["issues"]),
            ["DNS lookup failed: Google DNS returned an invalid response"],
        )

    def testDoHSessionIsClosed(self):
        with mock.patch("checkspf.resolver.requests.Session") as session_class:
            session = doh_session({"Status": 0})
            session_class.return_value.__enter__.return_value = session
            records = checkspf.resolver.resolve_with_google_doh("example.com")

        self.assertEqual(records, [])
        session.get.assert_called_once()
        session.headers.update.assert_called_once_with(
            {"User-Agent": checkspf._constants.USER_AGENT}
        )
        session_class.return_value.__exit__.assert_called_once()

    def testResolverFallback(self):
        """Backends are tried in order until one answers"""
        calls = []

        def native(domain, **kwargs):
            calls.append("native")
            raise DNSTimeout("DNS timeout")

        def google(domain, **kwargs):
            calls.append("google")
            return ["v=spf1 -all"]

        def cloudflare(domain, **kwargs):
            calls.append("cloudflare")
            return ["v=spf1 ~all"]

        backends = {"native": native, "google": google, "cloudflare": cloudflare}
        with mock.patch.dict(checkspf.resolver.BACKENDS, backends):
            records = checkspf.resolver.resolve_txt(
                "example.com",
                backend="native",
                fallback_backends=["google", "cloudflare"],
            )

        self.assertEqual(records, ["v=spf1 -all"])
        self.assertEqual(calls, ["native", "google"])

    def testResolverFallbackSkipsPrimary(self):
        calls = []

        def google(domain, **kwargs):
            calls.append("google")
            raise DNSException("Server failure")

        def cloudflare(domain, **kwargs):
            calls.append("cloudflare")
            return []

        backends = {"google": google, "cloudflare": cloudflare}
        with mock.patch.dict(checkspf.resolver.BACKENDS, backends):
            records = checkspf.resolver.resolve_txt(
                "example.com",
                backend="google",
                fallback_backends=["google", "cloudflare"],
            )

        self.assertEqual(records, [])
        self.assertEqual(calls, ["google", "cloudflare"])

    def testAllResolversFail(self):
        calls = []

        def failing(name, message):
            def backend(domain, **kwargs):
                calls.append(name)
                raise DNSException(message)

            return backend

        backends = {
            "native": failing("native", "DNS timeout"),
            "google": failing("google", "Server failure"),
            "cloudflare": failing("cloudflare", "Query refused"),
        }
        with mock.patch.dict(checkspf.resolver.BACKENDS, backends):
            with self.assertRaises(DNSException) as context:
                checkspf.resolver.resolve_txt(
                    "example.com",
                    backend="native",
                    fallback_backends=["google", "cloudflare"],
                )
            with self.assertRaises(DNSException) as single:
                checkspf.resolver.resolve_txt(
                    "example.com", backend="google", fallback_backends=[]
                )

        self.assertEqual(calls, ["native", "google", "cloudflare", "google"])
        self.assertEqual(
            str(context.exception),
            "All DNS resolvers failed (native, google, cloudflare): Query refused",
        )
        self.assertEqual(str(single.exception), "Server failure")

    def testDuplicateFallbacksAreTriedOnce(self):
        calls = []

        def failing(name):
            def backend(domain, **kwargs):
                calls.append(name)
                raise DNSException("Server failure")

            return backend

        backends = {"google": failing("google"), "cloudflare": failing("cloudflare")}
        with mock.patch.dict(checkspf.resolver.BACKENDS, backends):
            with self.assertRaises(DNSException) as context:
                checkspf.resolver.resolve_txt(
                    "example.com",
                    backend="cloudflare",
                    fallback_backends=["google", "google", "cloudflare"],
                )

        self.assertEqual(calls, ["cloudflare", "google"])
        self.assertIn("(cloudflare, google)", str(context.exception))

    def testNativeTimeoutFallsThrough(self):
        """A native query that outlives the timeout gives way to the fallback"""

        def slow_native(domain, **kwargs):
            time.sleep(5)
            return ["v=spf1 +all"]

        google = mock.Mock(return_value=["v=spf1 -all"])
        backends = {"native": slow_native, "google": google}
        with mock.patch.dict(checkspf.resolver.BACKENDS, backends):
            start = time.monotonic()
            records = checkspf.resolver.resolve_txt(
                "example.com",
                backend="native",
                fallback_backends=["google"],
                timeout=0.5,
            )
            elapsed = time.monotonic() - start

        self.assertEqual(records, ["v=spf1 -all"])
        google.assert_called_once_with("example.com", timeout=0.5)
        self.assertLess(elapsed, 3)

    def testTimeoutMethod(self):
        """Signals are only used from the main thread and never on Windows"""
        self.assertTrue(checkspf.resolver._get_timeout_method())

        methods = []
        thread = threading.Thread(
            target=lambda: methods.append(checkspf.resolver._get_timeout_method())
        )
        thread.start()
        thread.join()
        self.assertEqual(methods, [False])

        with mock.patch("checkspf.resolver.platform.system", return_value="Windows"):
            self.assertFalse(checkspf.resolver._get_timeout_method())

    def testResolverCache(self):
        backend = mock.Mock(return_value=["v=spf1 -all"])
        cache = ExpiringDict(max_len=10, max_age_seconds=60)
        with mock.patch.dict(checkspf.resolver.BACKENDS, {"google": backend}):
            for _ in range(2):
                records = checkspf.resolver.resolve_txt(
                    "Example.com", backend="google", cache=cache
                )

        self.assertEqual(records, ["v=spf1 -all"])
        self.assertEqual(backend.call_count, 1)

    def testUnknownResolver(self):
        self.assertRaises(
            ValueError,
            checkspf.resolver.resolve_txt,
            "example.com",
            backend="quad9",
        )

    def testNativeTXTRecords(self):
        """Native TXT answers are joined and decoded"""
        resolver = mock.Mock()
        resolver.resolve.return_value = [
            mock.Mock(strings=(b"v=spf1 ", b"-all")),
            mock.Mock(strings=(b"\xff\xfe",)),
        ]
        records = checkspf.utils.query_txt_records("example.com", resolver=resolver)
        self.assertEqual(records, ["v=spf1 -all", "Undecodable characters"])

        resolver.resolve.side_effect = dns.resolver.NoAnswer()
        self.assertEqual(
            checkspf.utils.query_txt_records("example.com", resolver=resolver), []
        )

        resolver.resolve.side_effect = dns.resolver.NXDOMAIN()
        self.assertRaises(
            DNSExceptionNXDOMAIN,
            checkspf.utils.query_txt_records,
            "example.com",
            resolver=resolver,
        )

    def testCheckSPFRequiresDomain(self):
        for domain in (None, "", "   "):
            results = checkspf.check_spf(domain)
            self.assertFalse(results["success"])
            self.assertEqual(results["status"], 400)
            self.assertEqual(results["error"], "Domain is required")
            self.assertNotIn("result", results)

    def testCheckSPFInvalidResolver(self):
        results = checkspf.check_spf("example.com", resolver="quad9")
        self.assertEqual(results["status"], 400)
        self.assertEqual(
            results["error"],
            "Invalid resolver: quad9. Valid options: native, google, cloudflare",
        )

    def testCheckSPFInvalidDomain(self):
        for domain in ("-example.com", "example.com-", "exa mple.com", "ex_ample.com"):
            results = checkspf.check_spf(domain)
            self.assertEqual(results["status"], 400, domain)
            self.assertEqual(results["error"], "Invalid domain format")

    def testCheckSPFNormalizesDomain(self):
        with fake_dns({"example.com": ["v=spf1 -all"]}) as dns_server:
            results = checkspf.check_spf("  Example.COM ", resolver="cloudflare")

        self.assertTrue(results["success"])
        self.assertEqual(results["status"], 200)
        self.assertEqual(results["resolver"], "cloudflare")
        self.assertEqual(results["domain"], "example.com")
        self.assertEqual(dns_server.queries, ["example.com"])

    def testCheckSPFSingleCharacterDomain(self):
        with fake_dns({"x": []}):
            results = checkspf.check_spf("X")

        self.assertTrue(results["success"])
        self.assertEqual(results["resolver"], checkspf._constants.DEFAULT_RESOLVER)

    def testCheckSPFWithoutRecordSucceeds(self):
        with fake_dns({"example.com": []}):
            results = checkspf.check_spf("example.com")

        self.assertTrue(results["success"])
        self.assertIsNone(results["result"]["record"])
        self.assertEqual(
            messages(results["result"]["issues"]), ["No TXT records found"]
        )

    def testCheckSPFUnexpectedError(self):
        with mock.patch(
            "checkspf.expand_spf_record", side_effect=RuntimeError("boom")
        ):
            with self.assertLogs(level="ERROR"):
                results = checkspf.check_spf("example.com")

        self.assertFalse(results["success"])
        self.assertEqual(results["status"], 500)
        self.assertEqual(results["error"], "boom")
        self.assertNotIn("result", results)

    def testCheckDomains(self):
        zone = {"a.example": ["v=spf1 -all"], "b.example": []}
        with fake_dns(zone):
            results = checkspf.check_domains(
                ["b.example", "a.example.", "A.example", ""]
            )

        self.assertEqual([r["domain"] for r in results], ["a.example", "b.example"])

    def testResultsToCSV(self):
        with fake_dns(NESTED_ZONE):
            results = [checkspf.check_spf("example.com"), checkspf.check_spf("-bad")]

        rows = list(csv.DictReader(io.StringIO(checkspf.results_to_csv(results))))

        self.assertEqual(len(rows), 5)
        self.assertEqual(rows[0]["depth"], "0")
        self.assertEqual(rows[1]["path"], "example.com -> a.example")
        self.assertEqual(rows[3]["path"], "example.com -> b.example -> c.example")
        self.assertEqual(rows[4]["success"], "False")
        self.assertEqual(rows[4]["error"], "Invalid domain format")

    def testResultsToJSON(self):
        with fake_dns({"example.com": ["v=spf1 -all"]}):
            results = checkspf.check_spf("example.com")

        output = json.loads(checkspf.results_to_json(results))
        self.assertEqual(output["result"]["lookup_count"], 0)
        self.assertEqual(output["result"]["mechanisms"][0]["type"], "all")

    @unittest.skipUnless(os.environ.get("CHECKSPF_NETWORK_TESTS"), "no network")
    def testKnownGood(self):
        """Domains with known good SPF records"""
        for resolver in checkspf._constants.RESOLVERS:
            results = checkspf.check_spf("google.com", resolver=resolver)
            self.assertTrue(results["success"])
            self.assertIsNotNone(results["result"]["record"])
            self.assertLessEqual(results["result"]["lookup_count"], 10)


if __name__ == "__main__":
    unittest.main(verbosity=2)
