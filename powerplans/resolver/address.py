"""
Address validation and normalization.

Normalization runs once per resolution attempt; everything downstream
(ESIID lookup, cache keys, matched_address) uses the normalized form.
"""

import re

from pydantic import BaseModel, ConfigDict

from powerplans.services.errors import IncompleteAddress, InvalidZipCode

_ZIP = re.compile(r"^(\d{5})(?:-(\d{4}))?$")
_ZIP4 = re.compile(r"^\d{4}$")
_STREET = re.compile(r"^(\d+[\w/]*)\s+(.+)$")
_UNIT = re.compile(
    r"(?:,\s*|\s+)(apt|apartment|suite|ste|unit|#)\.?\s*#?\s*([\w-]+)\s*$",
    re.IGNORECASE,
)

STREET_TYPES = {
    "ave": "Avenue",
    "avenue": "Avenue",
    "st": "Street",
    "street": "Street",
    "dr": "Drive",
    "drive": "Drive",
    "rd": "Road",
    "road": "Road",
    "ln": "Lane",
    "lane": "Lane",
    "blvd": "Boulevard",
    "boulevard": "Boulevard",
    "ct": "Court",
    "court": "Court",
    "cir": "Circle",
    "circle": "Circle",
    "way": "Way",
    "pl": "Place",
    "place": "Place",
    "pkwy": "Parkway",
    "parkway": "Parkway",
}

UNIT_TYPES = {
    "apt": "Apt",
    "apartment": "Apt",
    "suite": "Suite",
    "ste": "Suite",
    "unit": "Unit",
    "#": "Unit",
}

DIRECTIONALS = {"n", "s", "e", "w", "ne", "nw", "se", "sw"}


class AddressInfo(BaseModel):
    """Address as entered by the user."""

    street: str
    city: str
    state: str = "TX"
    zip_code: str
    zip4: str | None = None
    unit: str | None = None


class NormalizedAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    street_number: str
    street_name: str
    street_type: str | None = None
    unit_type: str | None = None
    unit_number: str | None = None
    city: str
    state: str
    zip_code: str
    zip4: str | None = None
    full_address: str

    @property
    def street_line(self) -> str:
        parts = [self.street_number, self.street_name]
        if self.street_type:
            parts.append(self.street_type)
        if self.unit_type and self.unit_number:
            parts.extend([self.unit_type, self.unit_number])
        return " ".join(parts)

    def cache_key(self) -> str:
        return f"resolution:{self.street_line.lower()}|{self.zip_code}"


def validate_zip(zip_code: str) -> str:
    """Return the 5-digit ZIP, accepting ZIP+4 input. Raises InvalidZipCode."""
    match = _ZIP.match((zip_code or "").strip())
    if not match:
        raise InvalidZipCode(f"Invalid ZIP code format: {zip_code!r}")
    return match.group(1)


def _title_word(word: str) -> str:
    if word.lower() in DIRECTIONALS:
        return word.upper()
    if word[:1].isdigit():
        return word.lower()
    return word.capitalize()


def _title(text: str) -> str:
    return " ".join(_title_word(w) for w in text.split())


def normalize_address(address: AddressInfo) -> NormalizedAddress:
    """
    Validate and normalize an address.

    Raises:
        InvalidZipCode: ZIP (or ZIP+4 suffix) is malformed
        IncompleteAddress: street, city or state missing/invalid
    """
    street = " ".join((address.street or "").split())
    city = " ".join((address.city or "").split())
    state = (address.state or "").strip().upper()

    missing = []
    if len(street) < 3:
        missing.append("street")
    if len(city) < 2:
        missing.append("city")
    if state != "TX":
        missing.append("state")
    if missing:
        raise IncompleteAddress(missing)

    zip_match = _ZIP.match((address.zip_code or "").strip())
    if not zip_match:
        raise InvalidZipCode(f"Invalid ZIP code format: {address.zip_code!r}")
    zip_code = zip_match.group(1)
    zip4 = address.zip4.strip() if address.zip4 else zip_match.group(2)
    if zip4 and not _ZIP4.match(zip4):
        raise InvalidZipCode(f"Invalid ZIP+4 extension: {zip4!r}")

    unit_type = unit_number = None
    unit_match = _UNIT.search(street)
    if unit_match:
        unit_type = UNIT_TYPES[unit_match.group(1).lower()]
        unit_number = unit_match.group(2).upper()
        street = street[: unit_match.start()].strip()
    elif address.unit:
        unit_text = address.unit.strip()
        parsed = _UNIT.search(f" {unit_text}")
        if parsed:
            unit_type = UNIT_TYPES[parsed.group(1).lower()]
            unit_number = parsed.group(2).upper()
        elif unit_text:
            unit_type, unit_number = "Unit", unit_text.lstrip("#").upper()

    street_match = _STREET.match(street)
    if not street_match:
        raise IncompleteAddress(["street_number"])
    street_number = street_match.group(1).upper()
    words = street_match.group(2).rstrip(".,").split()

    street_type = None
    if len(words) > 1 and words[-1].lower().rstrip(".") in STREET_TYPES:
        street_type = STREET_TYPES[words.pop().lower().rstrip(".")]
    street_name = _title(" ".join(words))

    city = _title(city)
    line = " ".join(p for p in (street_number, street_name, street_type) if p)
    if unit_type and unit_number:
        line = f"{line} {unit_type} {unit_number}"
    full_zip = f"{zip_code}-{zip4}" if zip4 else zip_code

    return NormalizedAddress(
        street_number=street_number,
        street_name=street_name,
        street_type=street_type,
        unit_type=unit_type,
        unit_number=unit_number,
        city=city,
        state=state,
        zip_code=zip_code,
        zip4=zip4,
        full_address=f"{line}, {city}, {state} {full_zip}",
    )
