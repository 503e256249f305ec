from .user import User
from .session import UserSession
from .email_account import EmailAccount
from .email import Email
from .draft import EmailDraft
from .rule import EmailRule
from .template import EmailTemplate
from .notification import Notification
from .budget import BudgetUsage, ApiUsageLog

# 在包导入时加载全部模型，保证 Base.metadata 能解析表之间的关系
