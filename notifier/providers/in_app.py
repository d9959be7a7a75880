"""In-app delivery.

In-app notifications are read straight from the notifications table, so
"delivering" one only confirms it is stored.
"""

import json
import uuid

from notifier.domain.models import Channel, NotificationMessage, ProviderResponse

from .base import Provider


class InAppProvider(Provider):
    channel = Channel.IN_APP

    def _send(self, message: NotificationMessage) -> ProviderResponse:
        return ProviderResponse.ok(str(uuid.uuid4()), json.dumps({"status": "stored"}))
