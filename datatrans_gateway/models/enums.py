"""Transaction status and payment method codes used by the Datatrans API.

See https://api-reference.datatrans.ch/#tag/v1transactions/operation/status
and https://docs.datatrans.ch/docs/payment-methods
"""

from __future__ import annotations

from enum import StrEnum


class _CodeEnum(StrEnum):
    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Return True if ``value`` is one of the known codes."""
        return value in cls._value2member_map_

    def matches(self, other: str) -> bool:
        # An empty code never matches anything.
        return other != "" and other == self.value


class TransactionStatus(_CodeEnum):
    INITIALIZED = "initialized"
    AUTHENTICATED = "authenticated"
    AUTHORIZED = "authorized"
    SETTLED = "settled"
    TRANSMITTED = "transmitted"
    FAILED = "failed"
    CANCELED = "canceled"


class PaymentMethod(_CodeEnum):
    ACC = "ACC"
    ALP = "ALP"
    APL = "APL"  # Apple Pay
    AMX = "AMX"  # American Express
    AZP = "AZP"
    BAC = "BAC"
    BON = "BON"
    CBL = "CBL"
    CFY = "CFY"
    CSY = "CSY"
    CUP = "CUP"
    DEA = "DEA"
    DIN = "DIN"
    DII = "DII"
    DIB = "DIB"
    DIS = "DIS"
    DNK = "DNK"
    ECA = "ECA"
    ELV = "ELV"
    EPS = "EPS"
    ESY = "ESY"
    GFT = "GFT"
    GPA = "GPA"
    HPC = "HPC"
    INT = "INT"
    JCB = "JCB"
    JEL = "JEL"
    KLN = "KLN"
    MAU = "MAU"
    MDP = "MDP"
    MFA = "MFA"
    MFX = "MFX"
    MPX = "MPX"
    MYO = "MYO"
    PAP = "PAP"
    PAY = "PAY"  # Google Pay
    PEF = "PEF"
    PFC = "PFC"
    PSC = "PSC"
    REK = "REK"
    SAM = "SAM"
    SWB = "SWB"
    SCX = "SCX"
    SWP = "SWP"
    TWI = "TWI"  # Twint
    UAP = "UAP"
    VIS = "VIS"
    WEC = "WEC"
    SWH = "SWH"
    VPS = "VPS"
    MBP = "MBP"
    GEP = "GEP"


# Statuses after which the merchant may ship / fulfil the order.
PAID_STATUSES: frozenset[TransactionStatus] = frozenset(
    {TransactionStatus.AUTHORIZED, TransactionStatus.SETTLED, TransactionStatus.TRANSMITTED}
)
