"""
Natural-language rule compiler.

The language model is an untrusted producer of a draft: its output is
unwrapped, parsed, checked for exactly the rule fields and the supported
kinds, then run through the same validator as manual creation. Drafts are
returned to the caller and never persisted here.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Optional

from ..core.errors import CompilerError, RuleValidationError
from ..schemas.rule import RuleDraft
from .actions import ACTION_KINDS
from .databases import DatabaseGateway
from .llm_client import ChatCompletionClient
from .rule_store import describe_action, describe_trigger, missing_fields, validate_rule_definition
from .triggers import TRIGGER_KINDS


logger = logging.getLogger("rule_compiler")

DRAFT_FIELDS = ("name", "description", "trigger_kind", "trigger_config", "action_kind", "action_config")
MAX_NAME_LENGTH = 255

_FENCE_RE = re.compile(r"^```[\w-]*\s*\n?(.*?)\n?```$", re.DOTALL)

PROMPT_TEMPLATE = """You are an automation rule parser. The user will describe an automation they want in plain English.
You MUST respond with ONLY a valid JSON object: no markdown, no explanation, no code fences.

The JSON must have exactly these fields:
{{
  "name": "short human-readable rule name (max 60 chars)",
  "description": "one sentence describing what the rule does",
  "trigger_kind": one of: {trigger_kinds},
  "trigger_config": object with fields depending on trigger_kind:
    - storage_threshold: {{ "threshold": <0-100 number> }}
    - cpu_threshold: {{ "threshold": <0-100 number>, "duration_minutes": <1-60, optional> }}
    - file_upload: {{ "file_types": [<extensions like "jpg","pdf">, empty array means any], "min_size_mb": <number, default 0> }}
    - scheduled: {{ "cron": "<standard 5-field cron expression>" }}
    - database_query: {{ "database_id": "<id from the available databases list>", "query": "<read-only SELECT with the condition in its WHERE clause>", "debounce_minutes": <number, default 5> }}
  "action_kind": one of: {action_kinds},
  "action_config": object with fields depending on action_kind:
    - email: {{ "to": "<email>", "subject": "<subject>", "body": "<message body, use {{{{field_name}}}} to insert trigger data>" }}
    - discord: {{ "webhook_url": "", "message": "<message, use {{{{field_name}}}} to insert trigger data>" }}
    - webhook: {{ "url": "", "method": "POST", "body": "<JSON string payload>" }}
    - dashboard_alert: {{ "title": "<title>", "message": "<message, use {{{{field_name}}}} to insert trigger data>", "severity": "info"|"warning"|"error" }}

For database_query triggers the rule fires whenever the query returns 1 or more rows. Build the condition into the SQL WHERE clause (e.g. WHERE quantity < reorder_threshold). Use {{{{column_name}}}} placeholders in action text to include columns of the first result row.
For email action_config.to: use an empty string "" if the user did not give an address.
For discord/webhook URLs: use an empty string "", the user will fill them in.
Interpret natural language times as cron (e.g. "every day at 9am" -> "0 9 * * *", "every Monday" -> "0 0 * * 1", "every hour" -> "0 * * * *").
{database_context}
User's automation request: "{text}"
"""


def build_prompt(text: str, databases: Optional[List[Dict[str, str]]] = None) -> str:
    database_context = ""
    if databases:
        lines = "\n".join(f'- id: "{db["id"]}", name: "{db.get("name") or db["id"]}"' for db in databases)
        database_context = f"\nUser's available databases (for database_query trigger):\n{lines}\n"
    return PROMPT_TEMPLATE.format(
        trigger_kinds=" | ".join(f'"{name}"' for name in TRIGGER_KINDS),
        action_kinds=" | ".join(f'"{name}"' for name in ACTION_KINDS),
        database_context=database_context,
        text=text.strip().replace('"', "'"),
    )


def extract_json_object(raw: str) -> str:
    """Strip code fences and any prose around the outermost JSON object."""
    content = (raw or "").strip()
    fenced = _FENCE_RE.match(content)
    if fenced:
        content = fenced.group(1).strip()
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end <= start:
        raise CompilerError("The model did not return a rule. Please try rephrasing your request.")
    return content[start : end + 1]


def parse_draft(raw: str) -> RuleDraft:
    try:
        data = json.loads(extract_json_object(raw))
    except json.JSONDecodeError as exc:
        raise CompilerError("AI returned an invalid response. Please try rephrasing your request.") from exc
    if not isinstance(data, dict):
        raise CompilerError("AI returned an invalid response. Please try rephrasing your request.")

    missing = [name for name in DRAFT_FIELDS if name not in data]
    if missing:
        raise CompilerError(f"The generated rule is missing fields: {', '.join(missing)}. Please try rephrasing your request.")
    extra = sorted(set(data) - set(DRAFT_FIELDS))
    if extra:
        raise CompilerError(f"The generated rule has unexpected fields: {', '.join(extra)}. Please try rephrasing your request.")

    trigger_kind = data["trigger_kind"]
    action_kind = data["action_kind"]
    if not isinstance(trigger_kind, str) or trigger_kind not in TRIGGER_KINDS:
        raise CompilerError(
            f"Unsupported trigger type: {trigger_kind}. "
            "Try describing a storage, CPU, file upload, scheduled or database query trigger."
        )
    if not isinstance(action_kind, str) or action_kind not in ACTION_KINDS:
        raise CompilerError(
            f"Unsupported action type: {action_kind}. "
            "Try describing an email, Discord, webhook or dashboard alert action."
        )

    name = data["name"]
    if not isinstance(name, str) or not name.strip():
        raise CompilerError("The generated rule has no name. Please try rephrasing your request.")
    if len(name) > MAX_NAME_LENGTH:
        raise CompilerError("The generated rule name is too long. Please try rephrasing your request.")
    description = data["description"]
    if description is not None and not isinstance(description, str):
        raise CompilerError("The generated rule description must be text.")

    try:
        trigger_config, action_config = validate_rule_definition(
            trigger_kind, data["trigger_config"], action_kind, data["action_config"]
        )
    except RuleValidationError as exc:
        raise CompilerError(f"The generated rule is invalid: {exc}", errors=exc.errors) from exc

    return RuleDraft(
        name=name.strip(),
        description=description,
        trigger_kind=trigger_kind,
        trigger_config=trigger_config,
        action_kind=action_kind,
        action_config=action_config,
        trigger_description=describe_trigger(trigger_kind, trigger_config),
        action_description=describe_action(action_kind, action_config),
        missing_fields=missing_fields(action_kind, action_config),
    )


class RuleCompiler:
    def __init__(
        self,
        client: Optional[ChatCompletionClient] = None,
        databases: Optional[DatabaseGateway] = None,
    ) -> None:
        self.client = client or ChatCompletionClient()
        self.databases = databases

    def compile(self, text: str, model: Optional[str] = None) -> RuleDraft:
        """Compile free text into a validated draft; raises CompilerError or LlmError."""
        if not text or not text.strip():
            raise CompilerError("Describe the automation you want to create.")
        database_list = self.databases.list_databases() if self.databases is not None else []
        prompt = build_prompt(text, database_list)
        raw = self.client.complete([{"role": "user", "content": prompt}], model=model)
        logger.info("Rule compiler received %s chars from model=%s", len(raw), model or self.client.default_model)
        try:
            draft = parse_draft(raw)
        except CompilerError as exc:
            logger.warning("Rule compilation rejected: %s", exc)
            raise
        return draft
