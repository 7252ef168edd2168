"""
Elementary files of a driver card and the order they are downloaded in

The base catalog is read-only. Lengths of the cyclic EFs depend on the
card and are computed from EF Application_Identification by
resolve_lengths(), which returns an overlay applied to a copy.
"""

from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import NamedTuple

from tacho_errors import InvalidLength

# Length placeholder for EFs sized by EF Application_Identification
DYNAMIC_LENGTH = 0

APPLICATION_IDENTIFICATION = "Application_identification"
IDENTIFICATION = "Identification"


@dataclass(frozen=True)
class RecordDefinition:
    name: str
    identifier: int
    length: int
    signature_required: bool


def _catalog(*definitions):
    return MappingProxyType({d.name: d for d in definitions})


CATALOG = _catalog(
    RecordDefinition("ICC", 0x0002, 25, False),
    RecordDefinition("IC", 0x0005, 8, False),
    RecordDefinition(APPLICATION_IDENTIFICATION, 0x0501, 10, True),
    RecordDefinition("Card_Certificate", 0xC100, 194, False),
    RecordDefinition("CA_Certificate", 0xC108, 194, False),
    RecordDefinition(IDENTIFICATION, 0x0520, 143, True),
    RecordDefinition("Card_Download", 0x050E, 4, True),
    RecordDefinition("Driving_License_Info", 0x0521, 53, True),
    RecordDefinition("Events_Data", 0x0502, DYNAMIC_LENGTH, True),
    RecordDefinition("Faults_Data", 0x0503, DYNAMIC_LENGTH, True),
    RecordDefinition("Driver_Activity_Data", 0x0504, DYNAMIC_LENGTH, True),
    RecordDefinition("Vehicles_Used", 0x0505, DYNAMIC_LENGTH, True),
    RecordDefinition("Places", 0x0506, DYNAMIC_LENGTH, True),
    RecordDefinition("Current_Usage", 0x0507, 19, True),
    RecordDefinition("Control_Activity_Data", 0x0508, 46, True),
    RecordDefinition("Specific_Conditions", 0x0522, 280, True),
)

# Read from the MF, before the tachograph application is selected
HEADER_FILES = ("ICC", "IC")

BODY_FILES = (
    "Card_Certificate", "CA_Certificate", IDENTIFICATION, "Card_Download",
    "Driving_License_Info", "Events_Data", "Faults_Data", "Driver_Activity_Data",
    "Vehicles_Used", "Places", "Current_Usage", "Control_Activity_Data",
    "Specific_Conditions",
)

# Sized by resolve_lengths(), in ResolvedLengths field order
DYNAMIC_FILES = (
    "Events_Data", "Faults_Data", "Driver_Activity_Data", "Vehicles_Used", "Places",
)

# Offset of the card number field inside EF Identification
CARD_NUMBER_FIELD = slice(0, 11)


def by_identifier(catalog=CATALOG):
    """Map file identifier -> definition"""
    return {d.identifier: d for d in catalog.values()}


class ResolvedLengths(NamedTuple):
    events: int
    faults: int
    driver_activity: int
    vehicles_used: int
    places: int

    def as_dict(self):
        return dict(zip(DYNAMIC_FILES, self))

    def apply(self, catalog=CATALOG):
        """Return a new read-only catalog with the resolved lengths filled in"""
        updated = dict(catalog)
        for name, length in self.as_dict().items():
            updated[name] = replace(catalog[name], length=length)
        return MappingProxyType(updated)


def resolve_lengths(app_identification):
    """
    Compute the sizes of the cyclic EFs from the 10 byte body of
    EF Application_Identification:

        typeOfTachographCardId       1
        cardStructureVersion         2
        noOfEventsPerType            1
        noOfFaultsPerType            1
        activityStructureLength      2
        noOfCardVehicleRecords       2
        noOfCardPlaceRecords         1
    """
    data = bytes(app_identification)
    if len(data) != 10:
        raise InvalidLength(f"application identification must be 10 bytes, got {len(data)}")

    events_per_type = data[3]
    faults_per_type = data[4]
    activity_structure_length = int.from_bytes(data[5:7], "big")
    vehicle_records = int.from_bytes(data[7:9], "big")
    place_records = data[9]

    return ResolvedLengths(
        events=events_per_type * 24 * 6,
        faults=faults_per_type * 24 * 2,
        driver_activity=activity_structure_length + 4,
        vehicles_used=vehicle_records * 31 + 2,
        places=place_records * 10 + 1,
    )
