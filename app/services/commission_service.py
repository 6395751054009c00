"""Marketplace commission split.

All amounts are integer minor units. The admin fee is the floor of
``gross * rate_bps / 10000``; whatever the floor drops stays with the
seller, so ``admin_fee + seller_amount == gross`` always holds.
"""
from app.errors import ValidationError
from dataclasses import dataclass

BPS_DENOMINATOR = 10000


@dataclass(frozen=True)
class CommissionSplit:
    gross_amount: int
    admin_fee: int
    seller_amount: int
    rate_bps: int

    def to_dict(self):
        return {
            'gross_amount': self.gross_amount,
            'admin_fee': self.admin_fee,
            'seller_amount': self.seller_amount,
            'commission_rate_bps': self.rate_bps,
        }


class CommissionEngine:

    def __init__(self, rate_bps: int):
        if isinstance(rate_bps, bool) or not isinstance(rate_bps, int):
            raise ValidationError('Commission rate must be an integer (bps)')
        if not 0 <= rate_bps <= BPS_DENOMINATOR:
            raise ValidationError(
                'Commission rate must be between 0 and 10000 bps',
                rate_bps=rate_bps)
        self.rate_bps = rate_bps

    @classmethod
    def from_config(cls, config):
        return cls(int(config['COMMISSION_RATE_BPS']))

    def compute_split(self, gross_minor: int) -> CommissionSplit:
        if isinstance(gross_minor, bool) or not isinstance(gross_minor, int):
            raise ValidationError(
                'Gross amount must be an integer in minor units')
        if gross_minor <= 0:
            raise ValidationError(
                'Gross amount must be positive',
                gross_amount=gross_minor)

        admin_fee = gross_minor * self.rate_bps // BPS_DENOMINATOR
        return CommissionSplit(
            gross_amount=gross_minor,
            admin_fee=admin_fee,
            seller_amount=gross_minor - admin_fee,
            rate_bps=self.rate_bps,
        )
