"""LLM topic extraction and time-bucketed topic frequency aggregation."""

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from .config import settings
from .llm import ChatModel, system_message, user_message
from .logging_setup import get_logger
from .metrics import topics_extracted_total
from .sketches import CountMinSketch, TopicUniverse, TopK, cms_key, topk_key

logger = get_logger(__name__)

# The prompts are a contract with the model; keep them byte-for-byte.
AI_TOPICS_PROMPT = """\
You are a topic classifier specialized in artificial intelligence. Given a post, extract only AI-related topics—both explicitly mentioned and reasonably implied.

If a post mentions an AI model, framework, technique, company, use case, research area, or tool, infer related AI topics or domains.

For example, if the post mentions "LangChain and OpenAI APIs", you may infer topics like "Prompt Engineering", "Retrieval-Augmented Generation", and "AI Tooling".

Avoid generic terms like "tech", "news", or "cool project".

Only return relevant AI topics.

Also avoid overly narrow items such as specific model version numbers or isolated API methods.

If the topic or a very similar one is already in the provided list of existing topics, use the one from the list. Otherwise, feel free to create a new one.

If the content is not related to AI at all, return an empty string.

If the content still mentions AI, try to imply topics anyway.

Format your response as comma separated values (ALWAYS, I MEAN IT):
"topic1, topic2, topic3"

⸻

Examples:

Post:
Just finished a tutorial on LangChain using OpenAI’s API. Super fun.
Output:
"LangChain, OpenAI, Prompt Engineering, AI Tooling"

Post:
Trying to run Mistral locally with Ollama. Inference seems fast!
Output:
"Mistral, Local Inference, Model Deployment, Open-Source LLMs"

Post:
Google’s new image model can generate photos from text prompts.
Output:
"Text-to-Image, Generative Models, Google AI, Diffusion Models"

Post:
Tried the new Zelda game over the weekend. It’s amazing!
Output:
""
"""

POLITICS_TOPICS_PROMPT = """\
You are a topic classifier specialized in politics. Given a post, extract only politics-related topics—both explicitly mentioned and reasonably implied.

If a post mentions a political figure, event, party, law, or movement, infer related political topics or domains.

For example, if the post mentions “Green New Deal”, you may infer topics like “climate policy”, “progressive politics”, and “US Congress”.

Avoid generic terms like “news”, “statement”, or “speech”.
Only return relevant political topics.

Also avoid overly narrow items such as specific bill numbers or individual quotes.

If the topic or a very similar is already in the provided list of existing topics, use the one from the list, otherwise, feel free to create a new one.

If the content is not political, return an empty string.

Format your response as comma separated values (ALWAYS, I MEAN IT):
"topic1, topic2, topic3"

Examples:

Post:
Climate change policy needs serious bipartisan commitment.
Output:
“Climate Policy, Bipartisanship, Environmental Politics”
⸻
Post:
Macron’s recent comments on NATO expansion are causing waves.
Output:
“Emmanuel Macron, NATO, Foreign Policy, European Politics”
⸻
Post:
Just watched a debate on universal basic income — fascinating stuff!
Output:
“Universal Basic Income, Economic Policy, Social Welfare”
⸻
Post:
The Supreme Court decision today is a major turning point.
Output:
“Supreme Court, Judicial System, Constitutional Law”
⸻
Post:
Alexandria Ocasio-Cortez is pushing for stronger climate legislation.
Output:
“Alexandria Ocasio-Cortez, Climate Policy, Progressive Politics, US Congress”
-
Post:
The Nintendo Switch is a cool video game console!
Output:
""
"""

TOPIC_PROMPTS = {
    "ai": AI_TOPICS_PROMPT,
    "politics": POLITICS_TOPICS_PROMPT,
}

_QUOTES = ('"', "“", "”")


def prompt_for_domain(domain: str) -> str:
    try:
        return TOPIC_PROMPTS[domain.lower()]
    except KeyError:
        raise ValueError(f"unknown topic domain {domain!r}, expected one of {sorted(TOPIC_PROMPTS)}") from None


def parse_topics(response: str) -> List[str]:
    """Split a ``"topic1, topic2"`` answer into topics.

    Straight and curly quotes are removed, items trimmed, empties and repeats dropped.
    """
    cleaned = response or ""
    for quote in _QUOTES:
        cleaned = cleaned.replace(quote, "")

    topics = []
    seen = set()
    for item in cleaned.split(","):
        topic = item.strip()
        if topic and topic not in seen:
            seen.add(topic)
            topics.append(topic)
    return topics


def build_topic_messages(prompt: str, text: str, existing_topics: Iterable[str]) -> List[dict]:
    return [
        system_message(prompt),
        user_message("Existing topics: " + ", ".join(sorted(existing_topics))),
        user_message("Post: " + text),
    ]


class TopicExtractor:
    """Asks the LLM for the topics of a text, primed with the known topic vocabulary."""

    def __init__(self, chat: ChatModel, universe: TopicUniverse, prompt: str = AI_TOPICS_PROMPT):
        self.chat = chat
        self.universe = universe
        self.prompt = prompt

    async def extract(self, text: str, remember: bool = True) -> List[str]:
        """Extract topics; with ``remember`` the result is added to the topic universe."""
        existing: Set[str] = await self.universe.members()
        response = await self.chat.complete(build_topic_messages(self.prompt, text, existing))
        topics = parse_topics(response)

        if remember and topics:
            await self.universe.add(topics)
        topics_extracted_total.inc(len(topics))

        logger.debug("Topics extracted", topics=topics, known_topics=len(existing))
        return topics


class TopicAggregator:
    """Counts topics into the current hour's Top-K and/or Count-Min Sketch."""

    def __init__(
        self,
        topk: Optional[TopK] = None,
        cms: Optional[CountMinSketch] = None,
        clock: Callable[[], Optional[datetime]] = lambda: None,
    ):
        if topk is None and cms is None:
            raise ValueError("TopicAggregator needs a Top-K, a Count-Min Sketch, or both")
        self.topk = topk
        self.cms = cms
        self.clock = clock
        self._ensured: Set[str] = set()

    async def _ensure(self, key: str, create) -> None:
        if key not in self._ensured:
            await create(key)
            self._ensured.add(key)

    async def record(self, topics: Iterable[str]) -> Dict[str, int]:
        """Increment each distinct topic by one in the current hour bucket."""
        counts = {topic: 1 for topic in topics}
        if not counts:
            return counts

        now = self.clock()
        if self.topk is not None:
            key = topk_key(now)
            await self._ensure(key, self.topk.ensure)
            await self.topk.incr_by(key, counts)
        if self.cms is not None:
            key = cms_key(now)
            await self._ensure(key, self.cms.ensure)
            await self.cms.incr_by(key, counts)
        return counts

    async def trending(self) -> List[str]:
        """Current hour's heavy hitters (Top-K only)."""
        if self.topk is None:
            return []
        return await self.topk.list(topk_key(self.clock()))
