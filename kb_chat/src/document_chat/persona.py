from langchain_core.output_parsers import StrOutputParser

from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.prompts.prompt_library import PROMPT_REGISTRY
from kb_chat.utils.thread_pool import run_sync, with_timeout


class PersonaRewriter:
    """
    Rewrites a final answer in a configured voice. Used as the engine's
    optional post-processing step: ``await rewriter(answer) -> str``.
    Any failure returns the answer unchanged.
    """

    def __init__(self, llm, persona: str, timeout_seconds: float = 60):
        self.persona = persona
        self.timeout_seconds = timeout_seconds
        self.chain = PROMPT_REGISTRY["persona"] | llm | StrOutputParser()

    async def __call__(self, answer: str) -> str:
        try:
            rewritten = await with_timeout(
                run_sync(self.chain.invoke, {"persona": self.persona, "answer": answer}),
                self.timeout_seconds,
                "Persona rewrite",
            )
        except Exception as e:
            log.warning("Persona rewrite failed, keeping original | error=%s", str(e))
            return answer

        if not rewritten or not rewritten.strip():
            return answer
        return rewritten.strip()
