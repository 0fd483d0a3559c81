from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal


class CamelModel(BaseModel):
    # The dashboard posts camelCase; snake_case is accepted too
    model_config = ConfigDict(populate_by_name=True)


# Auth
class SignupCodeRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None
    full_name: Optional[str] = Field(default="", alias="fullName")


class SignupVerifyRequest(BaseModel):
    email: str
    code: str
    password: str


class PasswordCodeRequest(BaseModel):
    email: str


class PasswordResetRequest(CamelModel):
    email: str
    code: str
    new_password: str = Field(alias="newPassword")


# Agents
class AgentFields(CamelModel):
    name: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    first_message: Optional[str] = Field(default=None, alias="firstMessage")
    language: Optional[str] = None
    voice_id: Optional[str] = Field(default=None, alias="voiceId")
    llm_model: Optional[str] = Field(default=None, alias="llmModel")
    temperature: Optional[float] = None
    stability: Optional[float] = None
    similarity_boost: Optional[float] = Field(default=None, alias="similarityBoost")
    speed: Optional[float] = None
    max_duration_seconds: Optional[int] = Field(default=None, alias="maxDurationSeconds")


class AgentCreate(AgentFields):
    name: str
    agent_type: Optional[str] = Field(default=None, alias="agentType")


class AgentUpdate(AgentFields):
    conversation_config: Optional[Dict[str, Any]] = None


class TTSRequest(CamelModel):
    voice_id: str = Field(alias="voiceId")
    text: str


# Conversations
class ConversationStart(CamelModel):
    elevenlabs_agent_id: str = Field(alias="agentId")


class MessageCreate(BaseModel):
    source: str
    content: str


# Telephony
class OutboundCallRequest(BaseModel):
    elevenlabs_agent_id: str
    agent_id: Optional[str] = None
    to_number: str


class PhoneNumberCreate(BaseModel):
    phone_number: str
    agent_id: Optional[str] = None
    label: Optional[str] = None
    status: str = "active"
    elevenlabs_phone_number_id: Optional[str] = None


class PhoneNumberUpdate(BaseModel):
    phone_number: Optional[str] = None
    agent_id: Optional[str] = None
    label: Optional[str] = None
    status: Optional[str] = None


# Campaigns & contacts
class CampaignCreate(BaseModel):
    name: str
    agent_id: str
    description: Optional[str] = None
    budget_euros: Optional[float] = None


class CampaignContactsAdd(BaseModel):
    contact_ids: List[str] = Field(default_factory=list)


class CampaignAction(BaseModel):
    action: str


class ContactCreate(BaseModel):
    first_name: str
    last_name: Optional[str] = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    source: str = "manual"


# Widgets
class WidgetCreate(BaseModel):
    agent_id: str
    name: str
    config: Dict[str, Any] = Field(default_factory=dict)
    domain_whitelist: List[str] = Field(default_factory=list)
    is_active: bool = True


class WidgetUpdate(BaseModel):
    name: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    domain_whitelist: Optional[List[str]] = None
    is_active: Optional[bool] = None


# Integrations
class SmtpConfig(CamelModel):
    host: str
    port: int
    username: str
    password: str
    from_email: str = Field(alias="fromEmail")
    from_name: Optional[str] = Field(default="", alias="fromName")
    encryption: str = "tls"


class CalendarEvent(BaseModel):
    title: str
    description: Optional[str] = ""
    start_at: str
    end_at: str
    location: Optional[str] = ""


class CalendarSyncRequest(BaseModel):
    action: str
    event: Optional[CalendarEvent] = None


# Messaging
class SmsSendRequest(BaseModel):
    to: str
    content: str
    contact_id: Optional[str] = None
    template_id: Optional[str] = None


class SmsTemplateCreate(BaseModel):
    name: str
    content: str
    category: Optional[str] = None


class EmailSendRequest(BaseModel):
    to: str
    subject: str
    body: str


class AppointmentEmailRequest(BaseModel):
    to: str
    client_name: str
    date: str
    time: str
    duration_minutes: int = 20
    motif: Optional[str] = "Rendez-vous"
    meeting_link: Optional[str] = None

class NotificationTemplateCreate(BaseModel):
    name: str
    type: Literal["sms", "email"] = "email"
    subject: Optional[str] = None
    content: str
    header_color: Optional[str] = None


class NotificationTemplateUpdate(BaseModel):
    name: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    header_color: Optional[str] = None


# Agent families: per-agent tool configuration
HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"
WorkingDay = Literal["lun", "mar", "mer", "jeu", "ven", "sam", "dim"]
TransferConditionKind = Literal[
    "demande_conseiller", "probleme_non_compris", "mot_cle_specifique", "reponse_incomprise",
    "demande_personne_reelle", "duree_depassee", "etape_critique",
]


class TransferCondition(BaseModel):
    condition: TransferConditionKind
    phone: Optional[str] = None


class Break(BaseModel):
    start: str = Field(pattern=HHMM)
    end: str = Field(pattern=HHMM)


class TransferSettings(BaseModel):
    transfer_enabled: bool = False
    always_transfer: bool = False
    transfer_conditions: List[TransferCondition] = Field(default_factory=list)
    default_transfer_number: Optional[str] = None


class AvailabilitySettings(BaseModel):
    working_days: List[WorkingDay] = Field(default_factory=lambda: ["lun", "mar", "mer", "jeu", "ven"])
    start_time: str = Field(default="09:00", pattern=HHMM)
    end_time: str = Field(default="18:00", pattern=HHMM)
    slot_duration_minutes: int = Field(default=30, ge=5, le=240)
    breaks: List[Break] = Field(default_factory=list)
    min_delay_hours: int = Field(default=0, ge=0)
    max_horizon_days: int = Field(default=30, ge=1, le=365)


class AppointmentConfig(TransferSettings, AvailabilitySettings):
    availability_enabled: bool = True
    sms_notification_enabled: bool = False
    email_notification_enabled: bool = False
    meeting_link: Optional[str] = None


class OrderConfig(TransferSettings):
    sms_enabled: bool = False
    email_enabled: bool = False
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    tax_rate: float = Field(default=0, ge=0, le=1)


class SupportConfig(TransferSettings):
    sms_enabled: bool = False
    email_enabled: bool = False
    default_priority: Literal["low", "medium", "high", "urgent"] = "medium"
    default_category: Literal["general", "technical", "billing", "feature_request", "bug"] = "general"
    sms_template_id: Optional[str] = None
    email_template_id: Optional[str] = None


class CommercialConfig(TransferSettings, AvailabilitySettings):
    product_name: Optional[str] = None
    product_description: Optional[str] = None
    sales_pitch: Optional[str] = None
    objection_handling: Optional[str] = None
    filler_words: List[str] = Field(default_factory=list)
    sms_enabled: bool = False
    email_enabled: bool = False
    sms_template_id: Optional[str] = None
    email_template_id: Optional[str] = None
    meeting_link: Optional[str] = None
    availability_enabled: bool = False
    end_time: str = Field(default="17:00", pattern=HHMM)
    min_delay_hours: int = Field(default=2, ge=0)


class AppointmentProfileUpdate(AgentFields):
    config: AppointmentConfig = Field(default_factory=AppointmentConfig, alias="rdvConfig")


class OrderProfileUpdate(AgentFields):
    config: OrderConfig = Field(default_factory=OrderConfig, alias="orderConfig")


class SupportProfileUpdate(AgentFields):
    config: SupportConfig = Field(default_factory=SupportConfig, alias="supportConfig")


class CommercialProfileUpdate(AgentFields):
    config: CommercialConfig = Field(default_factory=CommercialConfig, alias="commercialConfig")


# Dashboards
class OrderStatusUpdate(BaseModel):
    status: Literal["pending", "confirmed", "preparing", "ready", "delivered", "cancelled"]


class TicketCreate(BaseModel):
    subject: str = Field(min_length=1)
    description: Optional[str] = ""
    contact_id: Optional[str] = None
    agent_id: Optional[str] = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    category: Literal["general", "technical", "billing", "feature_request", "bug"] = "general"


class TicketUpdate(BaseModel):
    subject: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Literal["open", "in_progress", "waiting", "resolved", "closed"]] = None
    priority: Optional[Literal["low", "medium", "high", "urgent"]] = None
    category: Optional[Literal["general", "technical", "billing", "feature_request", "bug"]] = None


class TicketCommentCreate(BaseModel):
    content: str = Field(min_length=1)
    is_internal: bool = False


class LeadUpdate(BaseModel):
    status: Optional[Literal["pending", "interested", "not_interested", "callback", "transferred", "converted"]] = None
    interest_level: Optional[int] = Field(default=None, ge=1, le=5)
    notes: Optional[str] = None
    callback_date: Optional[str] = None
