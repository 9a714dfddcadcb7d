"""Payment gateway implementations for Midtrans and Xendit."""

from .midtrans import MidtransGateway
from .xendit import XenditGateway

__all__ = ["MidtransGateway", "XenditGateway"]
