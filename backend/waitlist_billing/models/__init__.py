from waitlist_billing.models.activity import Activity
from waitlist_billing.models.checkout_reservation import CheckoutReservation
from waitlist_billing.models.combined_invoice import CombinedInvoice, CombinedInvoiceItem
from waitlist_billing.models.order import LinkKind, Order, OrderItem, RegistrationLink
from waitlist_billing.models.profile import Profile
from waitlist_billing.models.registration import (
    ActivityRegistration,
    EventRegistration,
    SpecialEventRegistration,
    TournamentRegistration,
)
from waitlist_billing.models.site_setting import SiteSetting
from waitlist_billing.models.special_event import SpecialEvent
from waitlist_billing.models.tournament import Tournament
from waitlist_billing.models.waitlist_entry import WaitlistEntry, WaitlistStatus
from waitlist_billing.models.waitlist_invoice import WaitlistInvoice

__all__ = [
    "Activity",
    "ActivityRegistration",
    "CheckoutReservation",
    "CombinedInvoice",
    "CombinedInvoiceItem",
    "EventRegistration",
    "LinkKind",
    "Order",
    "OrderItem",
    "Profile",
    "RegistrationLink",
    "SiteSetting",
    "SpecialEvent",
    "SpecialEventRegistration",
    "Tournament",
    "TournamentRegistration",
    "WaitlistEntry",
    "WaitlistInvoice",
    "WaitlistStatus",
]
