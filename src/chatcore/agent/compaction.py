"""History compaction: replace a long transcript with one summary message."""

import logging
from dataclasses import dataclass
from typing import Dict, Sequence

from ..errors import BackendError, CompactionError
from ..models import ConversationMessage, Err, ErrorKind, Ok, Result, Role
from ..providers import AiBackend

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 10
DEFAULT_SUMMARY_TEMPERATURE = 0.3


@dataclass(frozen=True)
class SummaryTemplate:
    system_prompt: str
    instruction: str
    prefix: str
    role_names: Dict[Role, str]


TEMPLATES: Dict[str, SummaryTemplate] = {
    "en": SummaryTemplate(
        system_prompt=(
            "You are an assistant specialized in conversation summarization. Your task "
            "is to create a concise summary of the provided conversation history.\n\n"
            "Requirements for the summary:\n"
            "1. Preserve all key facts, names, numbers, and important information\n"
            "2. Combine similar topics into a single paragraph\n"
            "3. Use brief but informative formulations\n"
            "4. Maintain chronological order of discussed topics\n"
            "5. Do not add information that was not in the original conversation\n"
            "6. If a question was asked and answered, preserve the essence of both; "
            "if a question is still unanswered, preserve its gist\n\n"
            "Output format: Write a concise summary of the conversation as coherent text."
        ),
        instruction="Please create a concise summary of the following conversation:\n\n{conversation}",
        prefix="[Summary of previous conversation]",
        role_names={
            Role.USER: "User",
            Role.ASSISTANT: "Assistant",
            Role.SYSTEM: "System",
            Role.TOOL: "Tool",
        },
    ),
    "ru": SummaryTemplate(
        system_prompt=(
            "Ты - ассистент для суммаризации диалогов. Твоя задача - создать краткое "
            "резюме предоставленной истории разговора.\n\n"
            "Требования к резюме:\n"
            "1. Сохрани все ключевые факты, имена, числа и важную информацию\n"
            "2. Объедини похожие темы в один абзац\n"
            "3. Используй краткие, но информативные формулировки\n"
            "4. Сохрани хронологический порядок обсуждения тем\n"
            "5. Не добавляй информацию, которой не было в оригинале\n"
            "6. Если был задан вопрос и дан ответ, сохрани суть обоих; если вопрос "
            "остался без ответа, сохрани его суть\n\n"
            "Формат ответа: напиши краткое резюме разговора в виде связного текста."
        ),
        instruction="Пожалуйста, создай краткое резюме следующего разговора:\n\n{conversation}",
        prefix="[Резюме предыдущего разговора]",
        role_names={
            Role.USER: "Пользователь",
            Role.ASSISTANT: "Ассистент",
            Role.SYSTEM: "Система",
            Role.TOOL: "Инструмент",
        },
    ),
}


def template_for(language: str) -> SummaryTemplate:
    return TEMPLATES.get(language, TEMPLATES["en"])


def render_conversation(messages: Sequence[ConversationMessage], template: SummaryTemplate) -> str:
    """Attributed plain-text rendering of a transcript, skipping empty entries."""
    lines = []
    for message in messages:
        content = (message.content or "").strip()
        if not content:
            continue
        lines.append(f"{template.role_names.get(message.role, message.role.value)}: {content}")
    return "\n\n".join(lines)


class CompactionEngine:
    """Decides when a transcript is too long and condenses it with the same backend."""

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        temperature: float = DEFAULT_SUMMARY_TEMPERATURE,
    ) -> None:
        if threshold < 1:
            raise ValueError("compaction threshold must be at least 1")
        self.threshold = threshold
        self.temperature = temperature

    def should_compact(self, message_count: int) -> bool:
        return message_count >= self.threshold

    async def summarize(
        self,
        messages: Sequence[ConversationMessage],
        backend: AiBackend,
        model: str | None = None,
    ) -> Result[ConversationMessage]:
        """Return a single USER summary message, or an Err describing why there is none."""
        template = template_for(backend.language)
        conversation = render_conversation(messages, template)
        if not conversation:
            return Err(ErrorKind.COMPACTION, "nothing to summarize")

        logger.info(
            "Starting %s summarization of %d messages",
            backend.provider.display_name,
            len(messages),
        )
        try:
            summary = await self._request_summary(conversation, template, backend, model)
        except CompactionError as e:
            logger.error("Error during summarization: %s", e)
            return Err(ErrorKind.COMPACTION, str(e))

        logger.info("Successfully generated summary: %s...", summary[:100])
        return Ok(ConversationMessage.user(f"{template.prefix}: {summary}"))

    async def _request_summary(
        self,
        conversation: str,
        template: SummaryTemplate,
        backend: AiBackend,
        model: str | None,
    ) -> str:
        request = [ConversationMessage.user(template.instruction.format(conversation=conversation))]
        try:
            result = await backend.generate(
                request,
                system_prompt=template.system_prompt,
                temperature=self.temperature,
                model=model,
            )
        except BackendError as e:
            raise CompactionError(f"Failed to summarize message history: {e}") from e

        summary = result.text.strip()
        if not summary:
            raise CompactionError("backend returned an empty summary")
        return summary
