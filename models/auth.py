import uuid
from tortoise import fields
from tortoise.models import Model


class User(Model):
    id = fields.IntField(primary_key=True)
    name = fields.CharField(max_length=255)
    email = fields.CharField(max_length=255)
    role = fields.CharField(max_length=255, default='user')
    # identity the browser softphone registers with; inbound calls are bridged to it
    client_identity = fields.CharField(max_length=128, unique=True, default=lambda: uuid.uuid4().hex)
    last_password_change = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    voip_settings = fields.ReverseRelation['VoipSettings']

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


class VoipSettings(Model):
    """
    Per-user telephony settings. Owned by the admin/CRUD layer; the
    communication pipeline only reads them.
    """
    id = fields.IntField(primary_key=True)
    user = fields.OneToOneField("models.User", related_name="voip_settings", on_delete=fields.CASCADE)
    assigned_phone_number = fields.CharField(max_length=32, null=True, db_index=True)
    caller_id_number = fields.CharField(max_length=32, null=True)
    auto_record = fields.BooleanField(default=True)
    auto_transcribe = fields.BooleanField(default=True)
    sms_enabled = fields.BooleanField(default=True)
    from_email = fields.CharField(max_length=255, null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "user_voip_settings"

    @property
    def outbound_caller_id(self):
        return self.caller_id_number or self.assigned_phone_number
