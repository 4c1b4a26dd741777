from shopbot.models.facebook_page import FacebookPage
from shopbot.models.workspace_settings import WorkspaceSettings
from shopbot.models.conversation import Conversation, Message
from shopbot.models.product import Product
from shopbot.models.order import Order
from shopbot.models.webhook_event import WebhookEvent
from shopbot.models.api_usage import ApiUsage
from shopbot.models.image_recognition_cache import ImageRecognitionCache
