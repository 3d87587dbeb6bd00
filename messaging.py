"""
The action performed when a schedule fires: resolve the message text and
hand it to a transport.
"""

import logging
from typing import Optional

from content_source import ContentGenerationError, OpenAIContentSource
from models import RecurrenceDefinition
from transport import SendResult

logger = logging.getLogger(__name__)


class InvalidPayloadError(Exception):
    """Raised when a schedule has nothing to send or nowhere to send it."""
    pass


class MessageAction:
    """
    Sends the message described by a schedule's payload.

    Generated content falls back to the payload's static message when the
    content source is missing, unconfigured or failing.
    """

    def __init__(
        self,
        transport,
        content_source: Optional[OpenAIContentSource] = None,
        max_generated_length: int = 100
    ):
        self.transport = transport
        self.content_source = content_source
        self.max_generated_length = max_generated_length

    def resolve_content(self, definition: RecurrenceDefinition) -> str:
        payload = definition.payload
        if not payload.ai_generated:
            return payload.message

        if self.content_source is None or not self.content_source.has_api_key():
            logger.warning(f"[{definition.id}] No content source configured, using fallback message")
            return payload.message

        try:
            return self.content_source.generate(
                payload.contact_name,
                message_type=payload.message_type,
                context=payload.message_context,
                max_length=self.max_generated_length
            )
        except ContentGenerationError as e:
            logger.warning(f"[{definition.id}] Failed to generate message: {e}")
            return payload.message

    def perform(self, definition: RecurrenceDefinition) -> SendResult:
        """
        Send the schedule's message.

        Raises:
            InvalidPayloadError: Empty destination or empty content
            TransportError: Delivery failed (PermissionDeniedError included)
        """
        destination = (definition.payload.recipient or "").strip()
        if not destination:
            raise InvalidPayloadError("Invalid destination")

        content = (self.resolve_content(definition) or "").strip()
        if not content:
            raise InvalidPayloadError("Empty message")

        result = self.transport.send(destination, content)
        logger.info(f"[{definition.id}] Message sent to "
                    f"{definition.payload.contact_name or destination} ({result.parts} part(s))")
        return result
