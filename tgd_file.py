"""
TGD dump file layout

A dump is the plain concatenation of one chunk per downloaded EF:

    file id (2) | 00 | length (2) | EF contents
    [ file id (2) | 01 00 80 | signature (128) ]    signed EFs only

All integers are big-endian.
"""

import datetime
import os
import re
from dataclasses import dataclass
from pathlib import Path

from tacho_apdu import SIGNATURE_LENGTH, u16
from tacho_errors import (
    DumpWriteError, InvalidCardNumber, InvalidLength, MalformedDump, ShortWrite,
)
from tacho_files import CATALOG, by_identifier

ALLOWED_CARD_NUMBER = re.compile(r"^[A-Za-z0-9]+$")

DATA_TAG = 0x00
SIGNATURE_MARKER = bytes([0x01, 0x00, SIGNATURE_LENGTH])
CHUNK_HEADER_LENGTH = 5


@dataclass
class TGDRecord:
    name: str
    identifier: int
    payload: bytes
    signature: bytes = None


def file_chunk(identifier, payload, signature=None):
    """Encode one EF (and its signature, if any) the way it is stored in a TGD"""
    chunk = u16(identifier) + bytes([DATA_TAG]) + u16(len(payload)) + bytes(payload)
    if signature is not None:
        chunk += u16(identifier) + SIGNATURE_MARKER + bytes(signature)
    return chunk


def chunk_payload(chunk):
    """EF contents of an encoded chunk, without header or signature block"""
    length = int.from_bytes(chunk[3:5], "big")
    return chunk[CHUNK_HEADER_LENGTH:CHUNK_HEADER_LENGTH + length]


def build_tgd_filename(field, now=None):
    """
    Build the canonical dump name from the 11 byte card number field of
    EF Identification: first byte is the card type, then 10 characters of
    card number padded with spaces.
    """
    field = bytes(field)
    if len(field) != 11:
        raise InvalidLength(f"card number field must be 11 bytes, got {len(field)}")
    card_number = field[1:11].decode("latin-1").rstrip(" ")
    if not ALLOWED_CARD_NUMBER.match(card_number):
        raise InvalidCardNumber(card_number)
    if now is None:
        now = datetime.datetime.now()
    return f"C_{card_number}_{field[0]:02X}_{now.strftime('%y%m%d_%H%M')}.TGD"


def write_tgd(buffer, filename):
    """Write the whole dump in one go; a partial file is removed"""
    path = Path(filename)
    try:
        f = open(path, "wb")
    except OSError as e:
        raise DumpWriteError(f"cannot create file: {e}") from e
    try:
        with f:
            written = f.write(buffer)
    except OSError as e:
        os.remove(path)
        raise DumpWriteError(f"failed to write TGD data: {e}") from e
    if written != len(buffer):
        os.remove(path)
        raise ShortWrite(len(buffer), written)
    return path


def parse_tgd(buffer, catalog=CATALOG):
    """Split a dump back into its EFs using the signature flags of the catalog"""
    buffer = bytes(buffer)
    known = by_identifier(catalog)
    records = []
    pos = 0

    while pos < len(buffer):
        if pos + CHUNK_HEADER_LENGTH > len(buffer):
            raise MalformedDump(f"truncated chunk header at offset {pos}")
        identifier = int.from_bytes(buffer[pos:pos + 2], "big")
        tag = buffer[pos + 2]
        length = int.from_bytes(buffer[pos + 3:pos + 5], "big")
        definition = known.get(identifier)
        if definition is None:
            raise MalformedDump(f"unknown file id {identifier:04X} at offset {pos}")
        if tag != DATA_TAG:
            raise MalformedDump(f"expected data chunk for {definition.name}, got tag {tag:02X}")
        pos += CHUNK_HEADER_LENGTH
        payload = buffer[pos:pos + length]
        if len(payload) != length:
            raise MalformedDump(f"{definition.name} truncated: {len(payload)} of {length} bytes")
        pos += length

        signature = None
        if definition.signature_required:
            trailer = buffer[pos:pos + CHUNK_HEADER_LENGTH]
            if trailer != u16(identifier) + SIGNATURE_MARKER:
                raise MalformedDump(f"missing signature block for {definition.name}")
            pos += CHUNK_HEADER_LENGTH
            signature = buffer[pos:pos + SIGNATURE_LENGTH]
            if len(signature) != SIGNATURE_LENGTH:
                raise MalformedDump(f"{definition.name} signature truncated")
            pos += SIGNATURE_LENGTH

        records.append(TGDRecord(definition.name, identifier, payload, signature))

    return records
