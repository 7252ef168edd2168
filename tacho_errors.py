"""
Tachograph card download errors
Every failure raised while talking to the card or writing the dump
"""


class TachoError(Exception):
    """Base class for all card download failures"""

    def __init__(self, message=""):
        super().__init__(message)
        self.message = message
        self.context = []

    def add_context(self, context):
        """Prefix the error with the step that was running, outermost last"""
        self.context.append(context)
        return self

    def __str__(self):
        text = self.message
        for context in self.context:
            text = f"{context}: {text}"
        return text


class ChannelError(TachoError):
    """The card channel itself failed (reader removed, transport error)"""


class ShortResponse(TachoError):
    """Card answered with less than the 2 status bytes"""

    def __init__(self, response=b""):
        super().__init__("less than 2 bytes returned")
        self.response = bytes(response)


class StatusError(TachoError):
    """Card answered with a status word other than 90 00"""

    def __init__(self, sw, description=None):
        self.sw = bytes(sw)
        text = self.sw.hex().upper()
        if description:
            text = f"{text} ({description})"
        super().__init__(text)
        self.description = description

    @property
    def sw1(self):
        return self.sw[0]

    @property
    def sw2(self):
        return self.sw[1]


class UnexpectedResponse(TachoError):
    """Card returned data where none was expected"""

    def __init__(self, command_name, data):
        self.data = bytes(data)
        super().__init__(f"unexpected output in {command_name} command: {self.data.hex().upper()}")


class InvalidLength(TachoError):
    """Requested read length is not positive, or a fixed-size block has the wrong size"""


class SignatureLengthMismatch(TachoError):
    def __init__(self, length):
        super().__init__(f"signature with incorrect length: {length}")
        self.length = length


class InvalidCardNumber(TachoError):
    def __init__(self, card_number):
        super().__init__(f"card number contains not-allowed characters: {card_number}")
        self.card_number = card_number


class DumpWriteError(TachoError):
    """The TGD file could not be created or written"""


class ShortWrite(DumpWriteError):
    def __init__(self, expected, written):
        super().__init__(f"written distinct number of required bytes ({expected}): {written}")
        self.expected = expected
        self.written = written


class DumpCancelled(TachoError):
    """The download was cancelled before the next file was started"""


class MalformedDump(TachoError):
    """A TGD buffer does not follow the file chunk layout"""
