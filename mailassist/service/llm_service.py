"""
Claude 调用封装：邮件分析、回复草稿、分类摘要
每次调用前检查预算，调用后记录用量
"""
import json
import os
import re
from typing import Optional

import anthropic
from sqlalchemy.orm import Session

from mailassist.model.email import Email
from mailassist.service.budget_service import ensure_budget, log_api_usage
from mailassist.utils.logger import get_logger

logger = get_logger("llm_service")

MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5")
MAX_TOKENS = int(os.getenv("CLAUDE_MAX_TOKENS", "4096"))
BODY_LIMIT = 5000
SUMMARY_EMAIL_LIMIT = 50

_client: Optional[anthropic.Anthropic] = None


class InvalidAIResponseError(Exception):
    pass


def get_client() -> anthropic.Anthropic:
    global _client
    if _client is None:
        _client = anthropic.Anthropic(api_key=os.getenv("ANTHROPIC_API_KEY"))
    return _client


def _strip_code_fences(text: str) -> str:
    text = re.sub(r"```json\n?", "", text)
    text = re.sub(r"```\n?", "", text)
    return text.strip()


def _parse_json(text: str) -> dict:
    try:
        return json.loads(_strip_code_fences(text))
    except ValueError:
        logger.error(f"无法解析AI响应: {text[:500]}")
        raise InvalidAIResponseError("AI 响应格式无效")


def _complete(prompt: str, max_tokens: int = MAX_TOKENS):
    """返回 (文本, 输入token数, 输出token数)"""
    message = get_client().messages.create(
        model=MODEL,
        max_tokens=max_tokens,
        messages=[{"role": "user", "content": prompt}],
    )
    text = message.content[0].text
    return text, message.usage.input_tokens, message.usage.output_tokens


def _sender(email: Email) -> str:
    return email.from_name or email.from_address or ""


def _body(email: Email) -> str:
    return (email.body_text or "")[:BODY_LIMIT]


def analyze_email(db: Session, user_id: int, email: Email) -> dict:
    ensure_budget(db, user_id)

    prompt = f"""Analyze this email and provide a structured analysis:

**Email Details:**
- From: {_sender(email)}
- Subject: {email.subject}
- Body: {_body(email)}

**Task:**
1. Assign a priority score (1-100) and level (critical/high/medium/low)
2. Categorize the email (customer/work/personal/newsletter/automated/spam)
3. Determine sentiment (positive/neutral/negative/urgent)
4. Extract action items (tasks, deadlines, requests)
5. Generate a concise summary (1-2 sentences)
6. Suggest relevant tags

**Respond ONLY with valid JSON (no markdown, no code blocks):**
{{
  "priority_score": number,
  "priority_level": "critical" | "high" | "medium" | "low",
  "category": string,
  "sentiment": string,
  "action_items": [{{"task": string, "deadline": string | null}}],
  "summary": string,
  "tags": [string]
}}"""

    try:
        text, input_tokens, output_tokens = _complete(prompt)
        analysis = _parse_json(text)
        log_api_usage(db, user_id, email.id, "analyze_email", input_tokens, output_tokens)
        return analysis
    except Exception as e:
        logger.error(f"邮件分析失败 email={email.id}: {e}", exc_info=True)
        log_api_usage(db, user_id, email.id, "analyze_email", success=False, error=str(e))
        raise


def generate_draft_reply(db: Session, user_id: int, email: Email,
                         tone: str = "professional", instructions: str = "") -> dict:
    """
    生成回复草稿
    返回: {subject, body_text, body_html, confidence_score, notes}
    """
    ensure_budget(db, user_id)

    prompt = f"""Generate a professional email reply based on the following:

**Original Email:**
- From: {_sender(email)}
- Subject: {email.subject}
- Body: {_body(email)}

**Reply Instructions:**
- Tone: {tone}
- Additional instructions: {instructions or 'None'}

**Task:**
Generate a complete, ready-to-send email reply. Be helpful, professional, and address all points in the original email.

**Respond ONLY with valid JSON (no markdown, no code blocks):**
{{
  "subject": "Re: ...",
  "body_text": "Plain text version of reply",
  "body_html": "<p>HTML version of reply</p>",
  "confidence_score": number (0.0-1.0),
  "notes": "Brief explanation of the reply approach"
}}"""

    try:
        text, input_tokens, output_tokens = _complete(prompt)
        draft = _parse_json(text)
        log_api_usage(db, user_id, email.id, "generate_draft", input_tokens, output_tokens)
        return draft
    except Exception as e:
        logger.error(f"生成回复草稿失败 email={email.id}: {e}", exc_info=True)
        log_api_usage(db, user_id, email.id, "generate_draft", success=False, error=str(e))
        raise


def generate_category_summary(db: Session, user_id: int, emails: list, category: str) -> str:
    ensure_budget(db, user_id)

    emails = emails[:SUMMARY_EMAIL_LIMIT]
    emails_list = "\n".join(
        f"{i + 1}. From: {e.from_address} | Subject: {e.subject}" for i, e in enumerate(emails)
    )
    prompt = f"""Generate a concise summary of these {category} emails:

{emails_list}

**Task:**
Provide a brief overview highlighting:
1. Key themes and topics
2. Important senders
3. Urgent items requiring attention
4. Overall insights

Keep the summary to 3-4 sentences.

**Respond with plain text only (no JSON, no markdown):**"""

    representative_id = emails[0].id if emails else None
    try:
        text, input_tokens, output_tokens = _complete(prompt, max_tokens=500)
        log_api_usage(db, user_id, representative_id, "category_summary", input_tokens, output_tokens)
        return text.strip()
    except Exception as e:
        logger.error(f"生成分类摘要失败 category={category}: {e}", exc_info=True)
        log_api_usage(db, user_id, None, "category_summary", success=False, error=str(e))
        raise
