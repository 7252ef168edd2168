#!/usr/bin/env python3
"""
Tachograph Driver Card Reader
Downloads a driver card over PC/SC and saves it as a .TGD file
"""

import argparse
import datetime
import json
import sys
from contextlib import contextmanager
from enum import Enum
from pathlib import Path

from smartcard.Exceptions import CardConnectionException, NoCardException
from smartcard.System import readers
from smartcard.pcsc.PCSCExceptions import BaseSCardException
from smartcard.util import toHexString

import tacho_apdu
from tacho_errors import (
    ChannelError, DumpCancelled, InvalidLength, ShortResponse,
    SignatureLengthMismatch, StatusError, TachoError, UnexpectedResponse,
)
from tacho_files import (
    APPLICATION_IDENTIFICATION, BODY_FILES, CARD_NUMBER_FIELD, CATALOG,
    DYNAMIC_FILES, HEADER_FILES, IDENTIFICATION, resolve_lengths,
)
from tgd_file import build_tgd_filename, chunk_payload, file_chunk, parse_tgd, write_tgd


class PCSCChannel:
    """Card channel over a pyscard connection: raw command in, raw response (with SW) out"""

    def __init__(self, connection):
        self.connection = connection

    @property
    def atr(self):
        return toHexString(self.connection.getATR())

    def transmit(self, command):
        try:
            data, sw1, sw2 = self.connection.transmit(list(command))
        except CardConnectionException as e:
            raise ChannelError(f"APDU transmission failed: {e}") from e
        return bytes(data) + bytes([sw1, sw2])

    def disconnect(self):
        self.connection.disconnect()


def pcsc_readers():
    """All PC/SC readers; a missing PC/SC service is a channel error"""
    try:
        return readers()
    except BaseSCardException as e:
        raise ChannelError(f"cannot establish PC/SC context: {e}") from e


def list_card_readers():
    """PC/SC readers that currently hold a card"""
    with_card = []
    for reader in pcsc_readers():
        connection = reader.createConnection()
        try:
            connection.connect()
        except (NoCardException, CardConnectionException):
            continue
        connection.disconnect()
        with_card.append(reader)
    return with_card


def choose_reader(selector=None):
    """Pick a reader by exact name or index, or the first one with a card"""
    if selector is None:
        candidates = list_card_readers()
        if not candidates:
            raise ChannelError("please insert smart card")
        return candidates[0]

    all_readers = pcsc_readers()
    if selector.isdigit() and int(selector) < len(all_readers):
        return all_readers[int(selector)]
    for reader in all_readers:
        if str(reader) == selector:
            return reader
    raise ChannelError(f"reader not found: {selector!r}")


def connect_reader(reader):
    connection = reader.createConnection()
    connection.connect()
    return PCSCChannel(connection)


@contextmanager
def step(context):
    """Re-raise card errors with the name of the step that failed"""
    try:
        yield
    except TachoError as e:
        raise e.add_context(context)


class DumpState(Enum):
    IDLE = "idle"
    HEADER_RECORDS = "header_records"
    APPLICATION_SELECTED = "application_selected"
    IDENTIFICATION_READ = "identification_read"
    BODY_RECORDS = "body_records"
    ASSEMBLED = "assembled"
    WRITTEN = "written"
    FAILED = "failed"


class TachoCardReader:
    def __init__(self, channel, output_dir=".", verbose=True):
        """Initialize the reader on an already connected card channel"""
        self.channel = channel
        self.output_dir = Path(output_dir)
        self.verbose = verbose
        self.session_start = datetime.datetime.now()
        self.apdu_log = []
        self.state = DumpState.IDLE
        self.catalog = CATALOG
        self.resolved_lengths = None
        self.generated_filename = None
        self.buffer = None
        self._cancelled = False

    def log(self, message=""):
        if self.verbose:
            print(message)

    def log_apdu(self, data, direction=">"):
        """Log APDU exchanges for debugging"""
        timestamp = datetime.datetime.now().strftime("%H:%M:%S.%f")[:-3]
        if direction == ">":
            log_line = f"{timestamp} > {toHexString(list(data))}"
        elif len(data) > 2:
            log_line = f"{timestamp} < {toHexString(list(data[:-2]))} SW1={hex(data[-2])} SW2={hex(data[-1])}"
        elif len(data) == 2:
            log_line = f"{timestamp} < [empty] SW1={hex(data[0])} SW2={hex(data[1])}"
        else:
            log_line = f"{timestamp} < [short] {toHexString(list(data))}"

        self.log(log_line)
        self.apdu_log.append(log_line)
        return log_line

    # -- card channel ----------------------------------------------------

    def send_apdu(self, command):
        """Send one command, check the status word and return the data without it"""
        self.log_apdu(command, ">")
        response = bytes(self.channel.transmit(bytes(command)))
        self.log_apdu(response, "<")

        if len(response) < 2:
            raise ShortResponse(response)
        sw = response[-2:]
        if sw != tacho_apdu.SW_SUCCESS:
            raise StatusError(sw, tacho_apdu.describe_sw(sw[0], sw[1]))
        return response[:-2]

    def select_record(self, identifier):
        self.send_apdu(tacho_apdu.select_file(identifier))

    def read_record(self, length):
        """READ BINARY the whole EF, 255 bytes at a time"""
        if length < 1:
            raise InvalidLength("size should not be zero")

        output = b""
        remaining = length
        i = 0
        # Offsets advance by i * 0xFF whatever the card actually returned
        while remaining > 0:
            offset = (i * tacho_apdu.MAX_CHUNK) & 0xFFFF
            output += self.send_apdu(tacho_apdu.read_binary(offset, remaining))
            remaining -= tacho_apdu.MAX_CHUNK
            i += 1
        return output

    def prepare_hash(self):
        """PERFORM HASH OF FILE: the card hashes everything read after this"""
        self.send_apdu(tacho_apdu.HASH_PREPARE)

    def retrieve_hash(self):
        """PSO: COMPUTE DIGITAL SIGNATURE over the hashed EF"""
        signature = self.send_apdu(tacho_apdu.HASH_EXPORT)
        if len(signature) != tacho_apdu.SIGNATURE_LENGTH:
            raise SignatureLengthMismatch(len(signature))
        return signature

    def select_tachograph(self, generation=1):
        output = self.send_apdu(tacho_apdu.select_application(generation))
        if output:
            raise UnexpectedResponse("select tachograph", output)

    def process_record(self, definition):
        """Select, (hash,) read and (sign) one EF and return its TGD chunk"""
        signature = None
        with step("error selecting file"):
            self.select_record(definition.identifier)
        if definition.signature_required:
            with step("error creating hash"):
                self.prepare_hash()
        with step("error reading file"):
            contents = self.read_record(definition.length)
        if definition.signature_required:
            with step("error downloading hash"):
                signature = self.retrieve_hash()
        return file_chunk(definition.identifier, contents, signature)

    # -- download --------------------------------------------------------

    def cancel(self):
        """Stop before the next EF; the dump in progress is discarded"""
        self._cancelled = True

    def _enter(self, state):
        self.state = state
        self.log(f"\n{'='*60}")
        self.log(f"STEP: {state.name}")
        self.log(f"{'='*60}")

    def _process(self, name):
        if self._cancelled:
            raise DumpCancelled("download cancelled").add_context(f"before file {name}")
        definition = self.catalog[name]
        if name in DYNAMIC_FILES and self.resolved_lengths is None:
            raise RuntimeError(f"length of {name} has not been resolved before reading it")
        self.log(f"\n  Reading {name} ({definition.identifier:04X})...")
        with step(f"error processing file {name}"):
            chunk = self.process_record(definition)
        self.log(f"    ✓ {name}: {definition.length} bytes")
        return chunk

    def read_tgd(self, filename=None):
        """
        Run the whole download and return (buffer, filename).

        The filename is the one given, or the one built from
        EF Identification. Nothing is written here.
        """
        self.catalog = CATALOG
        self.resolved_lengths = None
        self.generated_filename = None
        self._cancelled = False
        self.buffer = None

        tgd_data = b""
        try:
            self._enter(DumpState.HEADER_RECORDS)
            for name in HEADER_FILES:
                tgd_data += self._process(name)

            with step("error selecting tachograph application"):
                self.select_tachograph(1)
            self._enter(DumpState.APPLICATION_SELECTED)

            app_id = self._process(APPLICATION_IDENTIFICATION)
            with step(f"error processing file {APPLICATION_IDENTIFICATION}"):
                self.resolved_lengths = resolve_lengths(chunk_payload(app_id))
            self.catalog = self.resolved_lengths.apply(CATALOG)
            tgd_data += app_id
            self._enter(DumpState.IDENTIFICATION_READ)
            for name, length in self.resolved_lengths.as_dict().items():
                self.log(f"    {name}: {length} bytes")

            self._enter(DumpState.BODY_RECORDS)
            for name in BODY_FILES:
                chunk = self._process(name)
                if name == IDENTIFICATION:
                    self._use_identification(chunk)
                tgd_data += chunk
        except Exception:
            self.state = DumpState.FAILED
            raise

        if filename:
            self.log(f" Ignoring generated filename to use the specified one: {self.generated_filename}")
        else:
            filename = str(self.output_dir / self.generated_filename)

        self.buffer = tgd_data
        self._enter(DumpState.ASSEMBLED)
        return tgd_data, filename

    def _use_identification(self, chunk):
        field = chunk_payload(chunk)[CARD_NUMBER_FIELD]
        with step("error generating filename"):
            self.generated_filename = build_tgd_filename(field, self.session_start)

    def dump(self, filename=None):
        """Download the card and write the TGD file; returns its path"""
        buffer, filename = self.read_tgd(filename)
        try:
            path = write_tgd(buffer, filename)
        except TachoError:
            self.state = DumpState.FAILED
            self.buffer = None
            raise
        self.state = DumpState.WRITTEN
        self.log(f"\n ✓ File saved to {path} ({len(buffer)} bytes)")
        return path

    def save_apdu_log(self, path):
        path = Path(path)
        with open(path, "w", encoding="utf-8") as f:
            f.write("Tachograph Card Session Log\n")
            f.write(f"Generated: {self.session_start.strftime('%Y-%m-%d %H:%M:%S')}\n")
            f.write(f"APDU Exchanges: {len(self.apdu_log)}\n")
            f.write("="*60 + "\n\n")
            for log_line in self.apdu_log:
                f.write(f"{log_line}\n")
        return path

    def save_summary(self, path):
        """JSON overview of the EFs contained in the last dump"""
        path = Path(path)
        records = parse_tgd(self.buffer, self.catalog)
        summary = {
            "session": {
                "timestamp": self.session_start.isoformat(),
                "generated_filename": self.generated_filename,
            },
            "resolved_lengths": self.resolved_lengths.as_dict() if self.resolved_lengths else {},
            "files": [
                {
                    "name": r.name,
                    "identifier": f"{r.identifier:04X}",
                    "length": len(r.payload),
                    "signed": r.signature is not None,
                }
                for r in records
            ],
            "total_bytes": len(self.buffer),
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2, ensure_ascii=False)
        return path


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="tgd-reader",
        description="Download a tachograph driver card to a .TGD file",
    )
    parser.add_argument("--list", action="store_true", help="List readers with a card and exit")
    parser.add_argument("-r", "--reader", default=None, help="Reader name or index (default: first with a card)")
    parser.add_argument("-o", "--output", default=None, help="TGD filename (default: derived from the card number)")
    parser.add_argument("-d", "--output-dir", default=".", help="Directory for the derived filename")
    parser.add_argument("--apdu-log", action="store_true", help="Also save the APDU log next to the dump")
    parser.add_argument("--summary", action="store_true", help="Also save a JSON summary next to the dump")
    parser.add_argument("-q", "--quiet", action="store_true", help="Do not trace APDUs")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    if args.list:
        try:
            found = list_card_readers()
        except TachoError as e:
            print(f"✗ Error: {e}")
            return 1
        for index, reader in enumerate(found):
            print(f" [{index}] {reader}")
        if not found:
            print("✗ No card readers with a card available")
        return 0

    channel = None
    try:
        reader = choose_reader(args.reader)
        print(f" Using reader: {reader}")
        channel = connect_reader(reader)
        print(f" Card ATR: {channel.atr}")

        tacho = TachoCardReader(channel, args.output_dir, verbose=not args.quiet)
        path = tacho.dump(args.output)

        if args.apdu_log:
            print(f"  ✓ APDU log: {tacho.save_apdu_log(path.with_name(path.name + '.apdu.log'))}")
        if args.summary:
            print(f"  ✓ Summary: {tacho.save_summary(path.with_name(path.name + '.json'))}")
        print(f"\n Card read successfully and saved data to {path}")
        return 0

    except NoCardException:
        print("✗ No card detected in reader!")
        return 1
    except CardConnectionException as e:
        print(f"✗ Card connection error: {e}")
        return 1
    except TachoError as e:
        print(f"✗ Error: {e}")
        return 1
    finally:
        if channel is not None:
            try:
                channel.disconnect()
                print(" Card disconnected")
            except CardConnectionException as e:
                print(f"  Disconnect warning: {e}")


if __name__ == "__main__":
    sys.exit(main())
