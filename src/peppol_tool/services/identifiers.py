"""PEPPOL participant identifiers and Electronic Address Scheme (EAS) codes."""
from __future__ import annotations

import re
from enum import Enum
from typing import Optional


class EasCode(str, Enum):
    # national business registers
    SIRENE = "0002"
    SE_ORGNR = "0007"
    FR_SIRET = "0009"
    FI_OVT = "0037"
    DUNS = "0060"
    GLN = "0088"
    DK_CVR = "0096"
    NL_KVK = "0106"
    NO_ORGNR = "0192"
    SG_UEN = "0195"
    IS_KENNITALA = "0196"
    LEI = "0199"
    LT_LEGAL_ENTITY = "0200"
    IT_IVA = "0202"
    DE_LEITWEG = "0204"
    BE_CBE = "0208"
    DE_COMPANY_NUMBER = "0209"

    # VAT numbers
    VAT_NO = "9908"
    VAT_AT = "9914"
    VAT_SE = "9919"
    VAT_ES = "9920"
    VAT_CH = "9923"
    VAT_DK = "9924"
    VAT_BE = "9925"
    VAT_DE = "9930"
    VAT_FI = "9931"
    VAT_GR = "9932"
    VAT_GB = "9933"
    VAT_IE = "9943"
    VAT_NL = "9944"
    VAT_IT = "9945"
    VAT_PT = "9946"
    VAT_LU = "9947"
    VAT_FR = "9957"

    @property
    def is_vat_scheme(self) -> bool:
        return self.value.startswith("99")

    @property
    def country_code(self) -> Optional[str]:
        return _SCHEME_COUNTRIES.get(self)


_VAT_SCHEMES: dict[str, EasCode] = {
    "AT": EasCode.VAT_AT,
    "BE": EasCode.VAT_BE,
    "CH": EasCode.VAT_CH,
    "DE": EasCode.VAT_DE,
    "DK": EasCode.VAT_DK,
    "ES": EasCode.VAT_ES,
    "FI": EasCode.VAT_FI,
    "FR": EasCode.VAT_FR,
    "GB": EasCode.VAT_GB,
    "GR": EasCode.VAT_GR,
    "IE": EasCode.VAT_IE,
    "IT": EasCode.VAT_IT,
    "LU": EasCode.VAT_LU,
    "NL": EasCode.VAT_NL,
    "NO": EasCode.VAT_NO,
    "PT": EasCode.VAT_PT,
    "SE": EasCode.VAT_SE,
}

_BUSINESS_SCHEMES: dict[str, EasCode] = {
    "BE": EasCode.BE_CBE,
    "DE": EasCode.DE_COMPANY_NUMBER,
    "DK": EasCode.DK_CVR,
    "FI": EasCode.FI_OVT,
    "FR": EasCode.FR_SIRET,
    "IS": EasCode.IS_KENNITALA,
    "IT": EasCode.IT_IVA,
    "LT": EasCode.LT_LEGAL_ENTITY,
    "NL": EasCode.NL_KVK,
    "NO": EasCode.NO_ORGNR,
    "SE": EasCode.SE_ORGNR,
    "SG": EasCode.SG_UEN,
}

_SCHEME_COUNTRIES: dict[EasCode, str] = {
    **{scheme: country for country, scheme in _VAT_SCHEMES.items()},
    **{scheme: country for country, scheme in _BUSINESS_SCHEMES.items()},
    EasCode.SIRENE: "FR",
    EasCode.DE_LEITWEG: "DE",
}

_COUNTRY_PREFIX = re.compile(r"^([A-Za-z]{2})")

# Greece issues VAT numbers with the EL prefix
_PREFIX_ALIASES = {"EL": "GR"}


def guess_country(vat_number: str) -> Optional[str]:
    """Return the ISO country code encoded in a VAT number prefix."""

    match = _COUNTRY_PREFIX.match(vat_number.strip())
    if not match:
        return None
    prefix = match.group(1).upper()
    return _PREFIX_ALIASES.get(prefix, prefix)


def strip_country_prefix(vat_number: str) -> str:
    return _COUNTRY_PREFIX.sub("", vat_number.strip(), count=1)


def vat_scheme_for_country(country: Optional[str]) -> Optional[EasCode]:
    if not country:
        return None
    return _VAT_SCHEMES.get(country.upper())


def business_scheme_for_country(country: Optional[str]) -> Optional[EasCode]:
    if not country:
        return None
    return _BUSINESS_SCHEMES.get(country.upper())


def lookup_identifier(vat_number: str, tax_number: Optional[str] = None, country: Optional[str] = None) -> str:
    """Identifier sent to the directory for a counterparty.

    An explicit national register number wins. Belgian companies are
    registered under their enterprise number, which is the VAT number
    without its ``BE`` prefix.
    """

    if tax_number:
        return tax_number
    if country and country.upper() == "BE" and vat_number.upper().startswith("BE"):
        return vat_number[2:]
    return vat_number


def lookup_scheme(
    vat_number: str,
    tax_number: Optional[str] = None,
    country: Optional[str] = None,
    scheme: Optional[EasCode] = None,
) -> Optional[EasCode]:
    """EAS scheme matching :func:`lookup_identifier` for the same arguments."""

    if scheme is not None:
        return scheme
    if country and (tax_number or country.upper() == "BE"):
        business = business_scheme_for_country(country)
        if business is not None:
            return business
    return vat_scheme_for_country(country or guess_country(vat_number))


def format_participant_id(scheme: EasCode | str, identifier: str) -> str:
    value = scheme.value if isinstance(scheme, EasCode) else scheme
    return f"{value}:{identifier}"


def parse_participant_id(participant_id: str) -> tuple[str, str]:
    """Split ``<scheme>:<identifier>``; a leading ``iso6523-actorid-upis::`` is ignored."""

    value = participant_id.strip()
    if "::" in value:
        value = value.split("::", 1)[1]
    scheme, sep, identifier = value.partition(":")
    if not sep or not scheme or not identifier:
        raise ValueError(f"Invalid participant identifier: {participant_id!r}")
    return scheme, identifier


def participant_id_for_vat(vat_number: str, country: Optional[str] = None) -> Optional[str]:
    """Participant id of a party known only by its VAT number."""

    effective = country or guess_country(vat_number)
    scheme = lookup_scheme(vat_number, country=effective)
    if scheme is None:
        return None
    return format_participant_id(scheme, lookup_identifier(vat_number, country=effective))
