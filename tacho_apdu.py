"""
APDU command frames used by the tachograph card download protocol
(select EF, read binary, select application, hash and signature)
"""

# Class / instruction bytes
CLA_ISO = 0x00
CLA_PROPRIETARY = 0x80
INS_SELECT = 0xA4
INS_READ_BINARY = 0xB0
INS_PSO = 0x2A

SW_SUCCESS = bytes([0x90, 0x00])

# Largest chunk a single READ BINARY may ask for
MAX_CHUNK = 0xFF
SIGNATURE_LENGTH = 0x80

# Application names for both card generations
TACHO_AID = {
    1: b"TACHO",
    2: b"SMRDT",  # generation 2, never exercised against a real card
}

HASH_PREPARE = bytes([CLA_PROPRIETARY, INS_PSO, 0x90, 0x00])
HASH_EXPORT = bytes([CLA_ISO, INS_PSO, 0x9E, 0x9A, SIGNATURE_LENGTH])

STATUS_WORDS = {
    0x6281: "Part of returned data may be corrupted",
    0x6282: "End of file reached before reading Le bytes",
    0x6700: "Wrong length",
    0x6900: "Command not allowed",
    0x6982: "Security status not satisfied",
    0x6985: "Conditions of use not satisfied",
    0x6A82: "File not found",
    0x6A86: "Incorrect parameters P1-P2",
    0x6A88: "Referenced data not found",
    0x6B00: "Wrong parameters (offset outside the EF)",
    0x6D00: "Instruction code not supported or invalid",
    0x6E00: "Class not supported",
    0x6F00: "No precise diagnosis",
}


def u16(value):
    """Encode an integer as 2 big-endian bytes"""
    return bytes([(value >> 8) & 0xFF, value & 0xFF])


def chunk_length(remaining):
    """Le byte for a READ BINARY, capped at the chunk size"""
    if remaining > MAX_CHUNK:
        return MAX_CHUNK
    return remaining


def select_file(file_id):
    """SELECT EF by file identifier"""
    return bytes([CLA_ISO, INS_SELECT, 0x02, 0x0C, 0x02]) + u16(file_id)


def read_binary(offset, length):
    """READ BINARY of up to 255 bytes at offset"""
    return bytes([CLA_ISO, INS_READ_BINARY]) + u16(offset) + bytes([chunk_length(length)])


def select_application(generation=1):
    """SELECT the tachograph DF by name"""
    try:
        name = TACHO_AID[generation]
    except KeyError:
        raise ValueError(f"unknown tachograph generation: {generation}") from None
    return bytes([CLA_ISO, INS_SELECT, 0x04, 0x0C, len(name) + 1, 0xFF]) + name


def describe_sw(sw1, sw2):
    """Human readable description of a status word"""
    sw = (sw1 << 8) | sw2
    if sw in STATUS_WORDS:
        return STATUS_WORDS[sw]
    if sw1 == 0x6C:
        return f"Wrong Le, {sw2} bytes available"
    if sw1 == 0x63 and (sw2 & 0xF0) == 0xC0:
        return f"Verification failed ({sw2 & 0x0F} retries left)"
    return None
