import pytest

import tacho_apdu
from tacho_errors import InvalidLength
from tacho_files import (
    BODY_FILES, CATALOG, DYNAMIC_FILES, DYNAMIC_LENGTH, HEADER_FILES, ResolvedLengths,
    resolve_lengths,
)
from fake_card import APP_IDENTIFICATION, RESOLVED


class TestCommandFrames:
    def test_select_file(self):
        assert tacho_apdu.select_file(0x0520) == bytes.fromhex("00A4020C020520")
        assert tacho_apdu.select_file(0xC108) == bytes.fromhex("00A4020C02C108")

    def test_read_binary_caps_length(self):
        assert tacho_apdu.read_binary(0x01FE, 90) == bytes.fromhex("00B001FE5A")
        assert tacho_apdu.read_binary(0, 1000) == bytes.fromhex("00B00000FF")

    def test_select_application(self):
        assert tacho_apdu.select_application() == bytes.fromhex("00A4040C06FF") + b"TACHO"
        assert tacho_apdu.select_application(2) == bytes.fromhex("00A4040C06FF") + b"SMRDT"
        with pytest.raises(ValueError):
            tacho_apdu.select_application(3)

    def test_hash_frames(self):
        assert tacho_apdu.HASH_PREPARE == bytes.fromhex("802A9000")
        assert tacho_apdu.HASH_EXPORT == bytes.fromhex("002A9E9A80")

    def test_describe_sw(self):
        assert tacho_apdu.describe_sw(0x6A, 0x82) == "File not found"
        assert tacho_apdu.describe_sw(0x6C, 0x10) == "Wrong Le, 16 bytes available"
        assert tacho_apdu.describe_sw(0x12, 0x34) is None


class TestCatalog:
    def test_traversal_order_is_disjoint(self):
        assert not set(HEADER_FILES) & set(BODY_FILES)
        assert all(name in CATALOG for name in HEADER_FILES + BODY_FILES)

    def test_dynamic_files(self):
        dynamic = [d.name for d in CATALOG.values() if d.length == DYNAMIC_LENGTH]
        assert sorted(dynamic) == sorted(RESOLVED)
        assert list(DYNAMIC_FILES) == list(RESOLVED)

    def test_base_catalog_is_read_only(self):
        with pytest.raises(TypeError):
            CATALOG["Places"] = None
        with pytest.raises(AttributeError):
            CATALOG["Places"].length = 10


class TestResolveLengths:
    def test_example_values(self):
        lengths = resolve_lengths(APP_IDENTIFICATION)
        assert lengths == ResolvedLengths(288, 144, 104, 126, 51)
        assert lengths.as_dict() == RESOLVED

    def test_is_pure(self):
        assert resolve_lengths(APP_IDENTIFICATION) == resolve_lengths(bytearray(APP_IDENTIFICATION))

    def test_big_endian_fields(self):
        data = bytes([0, 0, 0, 0, 0, 0x01, 0x00, 0x00, 0xC8, 0])
        lengths = resolve_lengths(data)
        assert lengths.driver_activity == 256 + 4
        assert lengths.vehicles_used == 200 * 31 + 2
        assert lengths.events == 0
        assert lengths.places == 1

    def test_wrong_size(self):
        with pytest.raises(InvalidLength):
            resolve_lengths(APP_IDENTIFICATION[:9])

    def test_apply_returns_new_catalog(self):
        resolved = resolve_lengths(APP_IDENTIFICATION).apply(CATALOG)
        assert resolved["Events_Data"].length == 288
        assert resolved["Places"].signature_required
        assert CATALOG["Events_Data"].length == DYNAMIC_LENGTH
        assert all(resolved[name].length for name in DYNAMIC_FILES)
