from enum import Enum
from tortoise import fields
from tortoise.models import Model


class MessageChannel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class MessageDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RECEIVED = "received"


class OutboundMessage(Model):
    id = fields.IntField(primary_key=True)
    user = fields.ForeignKeyField("models.User", related_name="messages", null=True, on_delete=fields.SET_NULL)

    channel = fields.CharEnumField(MessageChannel, max_length=8)
    direction = fields.CharEnumField(MessageDirection, default=MessageDirection.OUTBOUND, max_length=8)

    from_address = fields.CharField(max_length=255, null=True)
    to_address = fields.CharField(max_length=255)
    subject = fields.CharField(max_length=500, null=True)
    body = fields.TextField()

    # the external party; groups rows into a conversation
    conversation_key = fields.CharField(max_length=255, db_index=True)

    status = fields.CharEnumField(MessageStatus, default=MessageStatus.QUEUED, max_length=12)
    # set only once the provider accepted the message
    provider_message_id = fields.CharField(max_length=255, null=True, unique=True)
    scheduled_for = fields.DatetimeField(null=True)

    attempt_count = fields.IntField(default=0)
    sweep_attempts = fields.IntField(default=0)
    last_attempt_at = fields.DatetimeField(null=True)
    error_code = fields.CharField(max_length=32, null=True)
    error_message = fields.TextField(null=True)

    lead_id = fields.IntField(null=True)
    customer_id = fields.IntField(null=True)
    call = fields.ForeignKeyField("models.CallRecord", related_name="messages", null=True, on_delete=fields.SET_NULL)

    is_read = fields.BooleanField(default=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)
    sent_at = fields.DatetimeField(null=True)
    delivered_at = fields.DatetimeField(null=True)

    class Meta:
        table = "outbound_messages"
        indexes = (("status", "created_at"), ("user_id", "conversation_key", "created_at"))

    def __str__(self) -> str:
        return f"<OutboundMessage #{self.id} {self.channel} {self.status}>"
