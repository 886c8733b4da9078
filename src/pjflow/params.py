"""Sender parameters carried in the Payjoin request query string."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode

from .amount import FeeRate, check_sat
from .errors import InvalidInput


SUPPORTED_VERSIONS = (1, 2)


@dataclass(frozen=True)
class FeeContribution:
    max_amount: int
    output_index: int


@dataclass(frozen=True)
class SenderParams:
    version: int = 2
    disable_output_substitution: bool = False
    fee_contribution: Optional[FeeContribution] = None
    min_fee_rate: FeeRate = FeeRate.ZERO

    def to_query(self) -> str:
        pairs = [("v", str(self.version))]
        if self.fee_contribution is not None:
            pairs.append(("additionalfeeoutputindex", str(self.fee_contribution.output_index)))
            pairs.append(("maxadditionalfeecontribution", str(self.fee_contribution.max_amount)))
        if self.min_fee_rate.sat_per_kwu:
            pairs.append(("minfeerate", f"{self.min_fee_rate.to_sat_per_vb().normalize():f}"))
        if self.disable_output_substitution:
            pairs.append(("disableoutputsubstitution", "true"))
        return urlencode(pairs)

    @classmethod
    def from_query(cls, query: str) -> "SenderParams":
        """Parse sender parameters. Unknown keys are ignored."""
        fields = dict(parse_qsl(query, keep_blank_values=True))
        try:
            version = int(fields.get("v", "1"))
        except ValueError as e:
            raise InvalidInput(f"Invalid version parameter {fields.get('v')!r}") from e
        if version not in SUPPORTED_VERSIONS:
            raise InvalidInput(f"Unsupported Payjoin version {version}")

        contribution = None
        if "additionalfeeoutputindex" in fields or "maxadditionalfeecontribution" in fields:
            try:
                index = int(fields["additionalfeeoutputindex"])
                max_amount = check_sat(int(fields["maxadditionalfeecontribution"]))
            except (KeyError, ValueError) as e:
                raise InvalidInput(f"Incomplete or invalid fee contribution parameters: {e}") from e
            if index < 0:
                raise InvalidInput(f"Invalid additionalfeeoutputindex {index}")
            contribution = FeeContribution(max_amount, index)

        min_fee_rate = FeeRate.ZERO
        if "minfeerate" in fields:
            min_fee_rate = FeeRate.from_sat_per_vb(fields["minfeerate"])

        disable = fields.get("disableoutputsubstitution", "false").lower() in ("true", "1")
        return cls(version, disable, contribution, min_fee_rate)
