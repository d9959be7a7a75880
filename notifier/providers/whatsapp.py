"""WhatsApp delivery through Twilio's WhatsApp sender."""

from notifier.domain.models import Channel

from .base import INVALID_RECIPIENT
from .sms import TWILIO_PERMANENT_CODES, TwilioMessagingProvider

# Channel unavailable for the recipient; recipient not on WhatsApp
WHATSAPP_PERMANENT_CODES = TWILIO_PERMANENT_CODES | {"63003", "63016", INVALID_RECIPIENT}


class WhatsAppProvider(TwilioMessagingProvider):
    """Twilio messaging with 'whatsapp:'-prefixed addresses."""

    channel = Channel.WHATSAPP
    address_prefix = "whatsapp:"
    permanent_error_codes = WHATSAPP_PERMANENT_CODES
