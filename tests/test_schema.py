"""Tests for aprv.schema — generation detection and field-set validation."""

import pytest

from aprv.schema import (
    ParseState,
    RecordFormat,
    ReportFormatError,
    advance,
    decode_line,
    detect_legacy_domains,
    field_problems,
)

ACCESSOR = {"identifier": "com.example.App", "identifierType": "bundleID"}

ACCESS_V1 = {
    "stream": "com.apple.privacy.accounting.stream.tcc",
    "accessor": ACCESSOR,
    "tccService": "kTCCServicePhotos",
    "identifier": "S1",
    "kind": "intervalBegin",
    "timestamp": "2021-06-08T18:48:49.573-05:00",
    "version": 3,
}

ACCESS_V2 = {
    "accessor": ACCESSOR,
    "category": "photos",
    "identifier": "S1",
    "kind": "intervalBegin",
    "timestamp": "2021-06-25T09:51:51.222-05:00",
}

ACCESS_V3 = {
    "accessor": ACCESSOR,
    "category": "contacts",
    "identifier": "S1",
    "kind": "intervalBegin",
    "timeStamp": "2021-09-25T09:51:51.222-05:00",
    "type": "access",
}

DOMAIN_V2 = {
    "domain": "mask.icloud.com",
    "firstTimeStamp": "2021-06-18T05:55:10.417-05:00",
    "domainType": 2,
    "timeStamp": "2021-06-23T04:02:13.891-05:00",
    "context": "",
    "initiatedType": "AppInitiated",
    "hits": 7,
    "domainOwner": "",
    "bundleID": "com.sonos.SonosController",
}

DOMAIN_V3 = {**DOMAIN_V2, "type": "networkActivity"}

DOMAIN_V1 = {
    "domain": "example.com",
    "effectiveUserId": 501,
    "domainType": 1,
    "timeStamp": "2021-06-11T13:40:00.000-05:00",
    "hasApp.bundleName": "com.example.App",
    "context": "",
    "hits": 3,
    "domainOwner": "Example, Inc.",
    "initiatedType": "NonAppInitiated",
    "firstTimeStamp": "2021-06-10T08:00:00.000-05:00",
}


def _declared(record_type, version):
    return ParseState(record_type=record_type, version=version)


class TestControlLines:
    def test_metadata_declares_type_and_version(self):
        state, detected = advance(ParseState(), {
            "version": 2, "recordType": "access",
            "exportTimestamp": "2021-06-11T13:46:18.386-05:00", "_marker": "<metadata>",
        })
        assert detected is None
        assert state == ParseState(record_type="access", version=2)

    def test_metadata_supersedes_previous_declaration(self):
        state, _ = advance(_declared("access", 3), {
            "recordType": "networkActivity", "_marker": "<metadata>", "version": 1,
        })
        assert (state.record_type, state.version) == ("networkActivity", 1)

    def test_end_of_section_sets_flag(self):
        state, detected = advance(_declared("access", 2), {"_marker": "<end-of-section>"})
        assert detected is None
        assert state.end_of_section
        assert state.record_type == "access"

    def test_state_is_not_mutated(self):
        before = ParseState()
        advance(before, {"_marker": "<end-of-section>"})
        assert before == ParseState()

    def test_unknown_marker_fails(self):
        with pytest.raises(ReportFormatError, match="unknown marker"):
            advance(ParseState(), {"_marker": "<something-new>"})

    @pytest.mark.parametrize("line", [
        {"_marker": "<metadata>", "recordType": "location", "version": 1},
        {"_marker": "<metadata>", "recordType": "access"},
        {"_marker": "<metadata>", "recordType": "access", "version": "2"},
        {"_marker": "<metadata>", "recordType": "access", "version": True},
    ])
    def test_bad_metadata_fails(self, line):
        with pytest.raises(ReportFormatError, match="bad metadata"):
            advance(ParseState(), line)


class TestSelfDescribing:
    def test_access_v3(self):
        _, detected = advance(ParseState(), ACCESS_V3)
        assert detected.format is RecordFormat.ACCESS_V3
        assert detected.fields == ACCESS_V3

    def test_access_v3_with_out_of_process(self):
        _, detected = advance(ParseState(), {**ACCESS_V3, "outOfProcess": True})
        assert detected.format is RecordFormat.ACCESS_V3

    def test_domain_v3(self):
        _, detected = advance(ParseState(), DOMAIN_V3)
        assert detected.format is RecordFormat.DOMAIN_V3

    def test_type_ignores_ambient_metadata(self):
        """A v3 line stays v3 even inside an older declared section."""
        _, detected = advance(_declared("access", 2), ACCESS_V3)
        assert detected.format is RecordFormat.ACCESS_V3

    def test_unknown_type_fails(self):
        with pytest.raises(ReportFormatError, match="unexpected type"):
            advance(ParseState(), {**ACCESS_V3, "type": "location"})


class TestDeclaredGenerations:
    def test_access_v1(self):
        _, detected = advance(_declared("access", 2), ACCESS_V1)
        assert detected.format is RecordFormat.ACCESS_V1

    def test_access_v1_without_tcc_service(self):
        record = {k: v for k, v in ACCESS_V1.items() if k != "tccService"}
        _, detected = advance(_declared("access", 2), record)
        assert detected.format is RecordFormat.ACCESS_V1

    def test_access_v1_requires_line_version_3(self):
        with pytest.raises(ReportFormatError, match="version"):
            advance(_declared("access", 2), {**ACCESS_V1, "version": 4})

    def test_access_v2(self):
        _, detected = advance(_declared("access", 3), ACCESS_V2)
        assert detected.format is RecordFormat.ACCESS_V2

    def test_domain_v2(self):
        _, detected = advance(_declared("networkActivity", 1), DOMAIN_V2)
        assert detected.format is RecordFormat.DOMAIN_V2

    def test_record_before_metadata_fails(self):
        with pytest.raises(ReportFormatError, match="before any metadata"):
            advance(ParseState(), ACCESS_V2)

    def test_unsupported_declared_version_fails(self):
        with pytest.raises(ReportFormatError, match="unsupported access version 9"):
            advance(_declared("access", 9), ACCESS_V2)

    def test_v2_line_in_v1_section_fails(self):
        with pytest.raises(ReportFormatError, match="expected access v1 record"):
            advance(_declared("access", 2), ACCESS_V2)

    def test_unclassifiable_line_fails(self):
        with pytest.raises(ReportFormatError, match="bad line"):
            advance(_declared("access", 3), {"hello": "world"})

    def test_non_object_line_fails(self):
        with pytest.raises(ReportFormatError, match="expected object"):
            advance(ParseState(), [1, 2, 3])


class TestWholeNumbers:
    """JSON numbers written with a decimal point are the same value."""

    def test_access_v1_version_3_0(self):
        state, _ = advance(ParseState(), {
            "version": 2.0, "recordType": "access", "_marker": "<metadata>",
        })
        assert state.version == 2 and type(state.version) is int
        _, detected = advance(state, {**ACCESS_V1, "version": 3.0})
        assert detected.format is RecordFormat.ACCESS_V1
        assert type(detected.fields["version"]) is int

    def test_domain_hits_7_0(self):
        _, detected = advance(ParseState(), {**DOMAIN_V3, "hits": 7.0, "domainType": 2.0})
        assert detected.fields["hits"] == 7
        assert type(detected.fields["hits"]) is int
        assert type(detected.fields["domainType"]) is int

    def test_fractional_numbers_rejected(self):
        assert field_problems(RecordFormat.DOMAIN_V3, {**DOMAIN_V3, "hits": 7.5}) == [
            "bad 'hits': 7.5",
        ]
        with pytest.raises(ReportFormatError, match="bad metadata"):
            advance(ParseState(), {"_marker": "<metadata>", "recordType": "access",
                                   "version": 2.5})


class TestFieldProblems:
    def test_valid_record_has_no_problems(self):
        assert field_problems(RecordFormat.DOMAIN_V2, DOMAIN_V2) == []

    def test_extra_field(self):
        problems = field_problems(RecordFormat.ACCESS_V3, {**ACCESS_V3, "extra": 1})
        assert problems == ["unexpected field 'extra'"]

    def test_missing_field(self):
        record = {k: v for k, v in DOMAIN_V2.items() if k != "hits"}
        assert field_problems(RecordFormat.DOMAIN_V2, record) == ["missing 'hits'"]

    def test_bool_is_not_a_number(self):
        problems = field_problems(RecordFormat.DOMAIN_V2, {**DOMAIN_V2, "domainType": True})
        assert problems == ["bad 'domainType': True"]

    def test_hits_must_be_positive(self):
        assert field_problems(RecordFormat.DOMAIN_V2, {**DOMAIN_V2, "hits": 0})

    def test_accessor_shape(self):
        bad = {**ACCESS_V2, "accessor": {"identifier": "com.example.App"}}
        assert field_problems(RecordFormat.ACCESS_V2, bad)

    def test_out_of_process_must_be_bool(self):
        assert field_problems(RecordFormat.ACCESS_V3, {**ACCESS_V3, "outOfProcess": "yes"})

    def test_v1_domain_fields_do_not_fit_v2(self):
        assert field_problems(RecordFormat.DOMAIN_V2, DOMAIN_V1)


class TestLegacyDomains:
    def test_yields_bundle_keyed_records(self):
        pairs = list(detect_legacy_domains({
            "com.example.App": [DOMAIN_V1, {**DOMAIN_V1, "domain": "cdn.example.com"}],
            "com.other.App": [],
        }))
        assert [bundle for bundle, _ in pairs] == ["com.example.App", "com.example.App"]
        assert all(d.format is RecordFormat.DOMAIN_V1 for _, d in pairs)

    def test_non_array_value_fails(self):
        with pytest.raises(ReportFormatError, match="expected records array"):
            list(detect_legacy_domains({"com.example.App": DOMAIN_V1}))

    def test_bad_record_names_record(self):
        with pytest.raises(ReportFormatError, match="evil.example.com"):
            list(detect_legacy_domains({
                "com.example.App": [{**DOMAIN_V1, "domain": "evil.example.com", "x": 1}],
            }))


class TestDecodeLine:
    def test_bad_json(self):
        with pytest.raises(ReportFormatError, match="expected json"):
            decode_line("{not json")

    def test_error_location_in_message(self):
        err = ReportFormatError("unexpected type 'x'")
        err.locate(12, '{"type": "x"}')
        err.locate(99, "ignored")
        assert str(err) == 'line 12: unexpected type \'x\': {"type": "x"}'
