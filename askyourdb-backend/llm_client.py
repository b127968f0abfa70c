"""
AskYourDB - LLM Client
======================

Two one-shot LLM jobs, no agent, no tools:

1. PLAN GENERATION (PlanGenerator.generate)
   Question + schema hint -> raw QueryPlan mapping. The output is UNTRUSTED:
   it goes to plan_validator before anything touches a database.

2. SUMMARIZATION (Summarizer.summarize / Summarizer.stream_summary)
   Question + result rows -> natural-language answer. Never fails the
   request: any LLM problem degrades to fallback_summary().

Providers: Groq or OpenAI through LlamaIndex, selected by LLM_PROVIDER.
Provider errors are classified into actionable LLMError messages
(bad key, rate limit, quota, timeout, network).
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from llama_index.core.llms import ChatMessage, MessageRole

from config import Settings
from errors import LLMError
from json_extract import safe_json_parse

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 500

# Plan generation
PLAN_TEMPERATURE = 0.0
PLAN_MAX_TOKENS = 500

# Whole-string summary
SUMMARY_SAMPLE_ROWS = 10
SUMMARY_SAMPLE_CHARS = 2000
SUMMARY_TEMPERATURE = 0.2
SUMMARY_MAX_TOKENS = 400

# Streaming summary
STREAM_SAMPLE_ROWS = 3
STREAM_SAMPLE_CHARS = 1000
STREAM_TEMPERATURE = 0.3
STREAM_MAX_TOKENS = 500

NO_DATA_MESSAGE = (
    "I couldn't find any data matching your query. "
    "Try rephrasing your question or checking if the data exists."
)

BILLING_URLS = {
    "openai": "https://platform.openai.com/usage",
    "groq": "https://console.groq.com",
}


# ============================================================================
# PROMPTS
# ============================================================================

MONGO_SYSTEM_PROMPT = """You are a query generator for MongoDB that MUST output a valid JSON object following this QueryPlan schema:
{
  "operation": "find" | "aggregate" | "count",
  "collection": "collection_name", // REQUIRED - MongoDB collection name
  "filter": {},  // MongoDB query filter (for find/count)
  "projection": {},  // Fields to return (optional)
  "pipeline": [],  // Aggregation pipeline (for aggregate)
  "limit": number,  // Max results (optional)
  "sort": {}  // Sort order (optional)
}

SCHEMA INFORMATION:
Collections: users, products, orders, customers

users: { name, email, role, status, signupDate (Date), lastLogin (Date), country, plan }
products: { name, category, price (Number), stock (Number), sales (Number), rating (Number), sku }
orders: { orderNumber, customerEmail, customerName, items (Array), total (Number), status, orderDate (Date), shippedAt (Date), deliveredAt (Date) }
customers: { name, email, phone, status, totalOrders (Number), totalSpent (Number), joinDate (Date), lastOrderAt (Date) }

CRITICAL RULES:
1. ALWAYS include "collection" field - this is REQUIRED
2. For date comparisons, use ISO date strings: {"signupDate": {"$gte": "2025-10-29T00:00:00.000Z"}}
3. Calculate dates properly - for "last 30 days", subtract 30 days from current date
4. Use "find" for simple queries, "aggregate" for complex queries with grouping/calculations, "count" for counting
5. For revenue/total calculations, use aggregate with $sum
6. For "top N" queries, use sort with -1 for descending and limit
7. If the question cannot be answered without more information, output {"ambiguous": true, "clarify": "<question for the user>"}
8. Output ONLY valid JSON, no markdown, no explanations, no extra text"""

POSTGRES_SYSTEM_PROMPT = """You are a query generator for PostgreSQL that MUST output a valid JSON object following this QueryPlan schema:
{
  "operation": "find" | "aggregate" | "count",
  "table": "table_name", // REQUIRED - PostgreSQL table name
  "filter": {},  // Filter conditions using MongoDB-style operators
  "projection": {},  // Fields to return (optional, use {field: 1} to include)
  "pipeline": [],  // Aggregation pipeline for aggregate operations
  "limit": number,  // Max results (optional)
  "sort": {}  // Sort order (use 1 for ASC, -1 for DESC)
}

SCHEMA INFORMATION:
Tables: users, products, orders, customers

users: { id, name, email, role, status, signup_date (timestamp), last_login (timestamp), country, plan }
products: { id, name, category, price (numeric), stock (integer), sales (integer), rating (numeric), sku }
orders: { id, order_number, customer_email, customer_name, items (jsonb), total (numeric), status, order_date (timestamp), shipped_at (timestamp), delivered_at (timestamp) }
customers: { id, name, email, phone, status, total_orders (integer), total_spent (numeric), join_date (timestamp), last_order_at (timestamp) }

FILTER OPERATORS (use MongoDB-style operators that will be translated to SQL):
- Simple equality: {"status": "active"}
- Greater than: {"price": {"$gt": 100}}
- Greater or equal: {"signup_date": {"$gte": "2025-10-29"}}
- Less than: {"stock": {"$lt": 10}}
- In list: {"status": {"$in": ["pending", "shipped"]}}
- Not equal: {"role": {"$ne": "admin"}}
- Like/Contains: {"name": {"$like": "john"}}

AGGREGATE PIPELINE (for complex queries):
- $match: filter rows
- $group: group by field with aggregations ($sum, $avg, $count, $min, $max)
- $limit: limit results

EXAMPLES:
1. Find active users: {"operation": "find", "table": "users", "filter": {"status": "active"}, "limit": 100}
2. Count orders: {"operation": "count", "table": "orders", "filter": {"status": "completed"}}
3. Total revenue: {"operation": "aggregate", "table": "orders", "pipeline": [{"$group": {"_id": null, "total": {"$sum": "$total"}}}]}

CRITICAL RULES:
1. ALWAYS include "table" field - this is REQUIRED
2. For date comparisons, use ISO date strings: "2025-10-29" or "2025-10-29T00:00:00Z"
3. Use "find" for simple queries, "aggregate" for grouping/calculations, "count" for counting
4. If the question cannot be answered without more information, output {"ambiguous": true, "clarify": "<question for the user>"}
5. Output ONLY valid JSON, no markdown, no explanations, no extra text"""


def iso_timestamp(moment: datetime) -> str:
    """2025-10-29T12:00:00.000Z"""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def get_system_prompt(db_engine: str) -> str:
    return POSTGRES_SYSTEM_PROMPT if db_engine == "postgres" else MONGO_SYSTEM_PROMPT


def build_user_prompt(question: str, schema_hint: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    today = iso_timestamp(now)
    seven_days_ago = iso_timestamp(now - timedelta(days=7))
    thirty_days_ago = iso_timestamp(now - timedelta(days=30))

    return f"""Question: {question}

Available Collections/Tables: {json.dumps(schema_hint or {})}

IMPORTANT: Calculate dates relative to current time. Today is {today}.
For "last 30 days", use: {thirty_days_ago}
For "last 7 days", use: {seven_days_ago}

Example queries:

1. For "users who signed up in last 30 days":
{{"operation": "find", "collection": "users", "filter": {{"signupDate": {{"$gte": "{thirty_days_ago}"}}}}, "limit": 100}}

2. For "pending orders from last 7 days":
{{"operation": "find", "collection": "orders", "filter": {{"status": "pending", "orderDate": {{"$gte": "{seven_days_ago}"}}}}, "limit": 100}}

3. For "how many active customers":
{{"operation": "count", "collection": "customers", "filter": {{"status": "active"}}}}

4. For "top 5 products by sales":
{{"operation": "find", "collection": "products", "sort": {{"sales": -1}}, "limit": 5}}

Now generate the query plan for the question above. Output ONLY the JSON, nothing else."""


def build_sample(rows: List[Dict[str, Any]], max_rows: int, max_chars: int) -> str:
    """First N rows as JSON lines, cut to max_chars as one string."""
    lines = [json.dumps(row, default=str) for row in rows[:max_rows]]
    return "\n".join(lines)[:max_chars]


def build_summary_prompt(question: str, rows: List[Dict[str, Any]]) -> str:
    sample = build_sample(rows, SUMMARY_SAMPLE_ROWS, SUMMARY_SAMPLE_CHARS)
    return f"""You are a friendly data assistant. Answer the user's question directly based on the query results.

Question: "{question}"

Data ({len(rows)} total results):
{sample}

RULES:
1. Answer the question DIRECTLY - don't say "based on the data" or "the query shows"
2. If it's a count question, just give the number: "You have 96 active customers."
3. If it's a list, show the items clearly with bullet points
4. Format currency as $X,XXX.XX
5. Format large numbers with commas (1,234)
6. Keep it concise - 2-3 sentences max for simple questions
7. For aggregations, show each category clearly
8. Be conversational and helpful

Now answer the question:"""


def build_stream_prompt(question: str, rows: List[Dict[str, Any]]) -> str:
    sample = build_sample(rows, STREAM_SAMPLE_ROWS, STREAM_SAMPLE_CHARS)
    return f"""You are a helpful data analyst assistant. Based on the database query results below, provide a clear, well-formatted answer to the user's question.

User Question: "{question}"

Query returned {len(rows)} result(s). Here is a sample of the data:
{sample}

Instructions:
- Provide a direct, conversational answer
- Use bullet points or numbered lists when showing multiple items
- Format numbers nicely (currency with $, large numbers with commas)
- If showing a list, limit to top 10 items
- Be concise but informative
- Don't mention "rows" or "database" - speak naturally as if explaining to a business user"""


# ============================================================================
# PROVIDERS
# ============================================================================

def create_llm(settings: Settings, temperature: float, max_tokens: int):
    """
    Build a LlamaIndex LLM for the configured provider.

    Raises:
        LLMError: if the provider's API key is missing
    """
    if settings.llm_provider == "groq":
        if not settings.groq_api_key:
            raise LLMError("Groq API key is not configured. Please set GROQ_API_KEY in your .env file.")
        from llama_index.llms.groq import Groq

        return Groq(
            model=settings.groq_model,
            api_key=settings.groq_api_key,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    if not settings.openai_api_key:
        raise LLMError("OpenAI API key is not configured. Please set OPENAI_API_KEY in your .env file.")
    from llama_index.llms.openai import OpenAI

    return OpenAI(
        model=settings.openai_model,
        api_key=settings.openai_api_key,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=30.0,
        max_retries=2,
    )


def classify_llm_error(error: Exception, provider: str) -> LLMError:
    """Map a provider exception onto an actionable LLMError."""
    message = str(error) or error.__class__.__name__
    name = provider.upper()

    logger.error(f"LLM error ({name}): {error.__class__.__name__}: {message}")

    if "API key" in message or "Unauthorized" in message or "401" in message:
        return LLMError(f"Invalid or missing {name} API key. Please check your {name}_API_KEY in .env file")
    if "rate limit" in message or "429" in message:
        return LLMError(f"{name} API rate limit exceeded. Please try again in a few moments")
    if "quota" in message or "insufficient_quota" in message:
        billing_url = BILLING_URLS.get(provider, BILLING_URLS["groq"])
        return LLMError(f"{name} API quota exceeded. Please check your account billing at {billing_url}")
    if "timeout" in message or "ETIMEDOUT" in message:
        return LLMError(f"{name} API request timed out. Please try again")
    if "network" in message or "ECONNREFUSED" in message:
        return LLMError(f"Unable to connect to {name} API. Please check your internet connection")

    return LLMError(f"Failed to generate query plan: {message}")


# ============================================================================
# PLAN GENERATION
# ============================================================================

class PlanGenerator:
    """Question -> raw (untrusted) plan mapping."""

    def __init__(self, settings: Settings, llm=None):
        self.settings = settings
        self._llm = llm

    @property
    def llm(self):
        if self._llm is None:
            self._llm = create_llm(self.settings, PLAN_TEMPERATURE, PLAN_MAX_TOKENS)
        return self._llm

    async def generate(self, question: str, schema_hint: Optional[Dict[str, Any]] = None) -> Any:
        """
        Ask the LLM for a plan.

        Returns:
            Parsed JSON from the model (a plan or an ambiguity response)

        Raises:
            LLMError: empty/oversized question, provider failure, unparsable output
        """
        if not question or not question.strip():
            raise LLMError("Question cannot be empty")
        if len(question) > MAX_QUESTION_LENGTH:
            raise LLMError(f"Question exceeds maximum length of {MAX_QUESTION_LENGTH} characters")

        provider = self.settings.llm_provider
        logger.info(f"Using LLM provider: {provider}")

        messages = [
            ChatMessage(role=MessageRole.SYSTEM, content=get_system_prompt(self.settings.db_engine)),
            ChatMessage(role=MessageRole.USER, content=build_user_prompt(question, schema_hint)),
        ]

        try:
            response = await self.llm.achat(messages)
        except LLMError:
            raise
        except Exception as e:
            raise classify_llm_error(e, provider)

        text = (response.message.content or "").strip()
        parsed = safe_json_parse(text)

        if not parsed:
            logger.error(f"LLM returned invalid JSON: {text[:200]}")
            raise LLMError("Failed to parse LLM response")

        return parsed


# ============================================================================
# SUMMARIZATION
# ============================================================================

def _format_number(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, float) and not value.is_integer():
        return f"{value:,.2f}"
    return f"{int(value):,}"


def fallback_summary(question: str, rows: List[Dict[str, Any]]) -> str:
    """Deterministic answer used whenever the LLM cannot summarize."""
    count = len(rows)
    question_lower = question.lower()

    if "how many" in question_lower or "count" in question_lower:
        return f"There are {count:,} results."

    if "revenue" in question_lower or "total" in question_lower:
        first = rows[0] if rows else {}
        if first.get("_id") and first.get("totalRevenue"):
            lines = "\n".join(
                f"• {row.get('_id')}: ${_format_number(row.get('totalRevenue'))}"
                for row in rows
            )
            return f"Revenue breakdown:\n{lines}"

    if "top" in question_lower:
        items = "\n".join(
            f"{i}. {row.get('name') or row.get('_id') or json.dumps(row, default=str)}"
            for i, row in enumerate(rows[:5], start=1)
        )
        return f"Top results:\n{items}"

    return f"Found {count:,} results."


class Summarizer:
    """Rows -> natural-language answer. Never raises to the caller."""

    def __init__(self, settings: Settings, llm=None, stream_llm=None):
        self.settings = settings
        self._llm = llm
        self._stream_llm = stream_llm

    @property
    def llm(self):
        if self._llm is None:
            self._llm = create_llm(self.settings, SUMMARY_TEMPERATURE, SUMMARY_MAX_TOKENS)
        return self._llm

    @property
    def stream_llm(self):
        if self._stream_llm is None:
            self._stream_llm = create_llm(self.settings, STREAM_TEMPERATURE, STREAM_MAX_TOKENS)
        return self._stream_llm

    async def summarize(self, question: str, rows: List[Dict[str, Any]]) -> str:
        if not rows:
            return NO_DATA_MESSAGE

        try:
            prompt = build_summary_prompt(question, rows)
            response = await self.llm.achat([ChatMessage(role=MessageRole.USER, content=prompt)])
            content = (response.message.content or "").strip()
            return content or f"Found {len(rows)} results."
        except Exception as e:
            logger.warning(f"LLM summarization failed, using fallback: {e}")
            return fallback_summary(question, rows)

    async def stream_summary(self, question: str, rows: List[Dict[str, Any]]) -> AsyncIterator[str]:
        """Yield answer fragments; a failure ends the stream with one fallback fragment."""
        if not rows:
            yield f'No results found for your query: "{question}"'
            return

        try:
            prompt = build_stream_prompt(question, rows)
            stream = await self.stream_llm.astream_chat([ChatMessage(role=MessageRole.USER, content=prompt)])
            async for chunk in stream:
                if chunk.delta:
                    yield chunk.delta
        except Exception as e:
            logger.warning(f"LLM streaming summarization failed, using fallback: {e}")
            yield fallback_summary(question, rows)
