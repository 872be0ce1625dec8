import os
import sys

from dotenv import load_dotenv
from langchain_google_genai import ChatGoogleGenerativeAI, GoogleGenerativeAIEmbeddings
from langchain_groq import ChatGroq

from kb_chat.exception.custom_exception import KnowledgeChatException
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.utils.config_loader import load_config

PROVIDER_KEYS = {
    "groq": "GROQ_API_KEY",
    "google": "GOOGLE_API_KEY",
}


class ApiKeyManager:
    """
    Loads the API keys needed by the providers named in the config. Only
    providers that are actually configured are required.
    """

    def __init__(self, providers: set[str]):
        load_dotenv()
        self.keys = {}

        required = sorted({PROVIDER_KEYS[p] for p in providers if p in PROVIDER_KEYS})
        missing = []

        for k in required:
            if val := os.getenv(k):
                self.keys[k] = val
                log.info("Loaded %s from env", k)
            else:
                log.error("Missing required API key: %s", k)
                missing.append(k)

        if missing:
            raise KnowledgeChatException(f"Missing API keys: {', '.join(missing)}", sys)

    def get(self, key: str) -> str:
        return self.keys[key]


class ModelLoader:
    """
    Responsible for:
    - Loading embeddings
    - Loading role-based chat models (rag, synthesis, persona, course)
    """

    def __init__(self, config: dict | None = None):
        # Load configuration
        self.config = config if config is not None else load_config()
        log.info("YAML config loaded | config_keys=%s", list(self.config.keys()))

        providers = {self.config.get("embedding_model", {}).get("provider", "google")}
        providers.update(
            role_cfg.get("provider") for role_cfg in self.config.get("llm", {}).values()
        )
        self.api_key_mgr = ApiKeyManager(providers)
        self.api_keys = self.api_key_mgr.keys

    def load_embeddings(self):
        """
        Load and return the embedding model used by every vector collection.
        """
        try:
            emb_cfg = self.config["embedding_model"]
            model_name = emb_cfg["model_name"]
            log.info("Loading embedding model | model=%s", model_name)
            return GoogleGenerativeAIEmbeddings(
                model=model_name, google_api_key=self.api_keys.get("GOOGLE_API_KEY")
            )
        except Exception as e:
            log.error("Error loading embedding model | error=%s", str(e))
            raise KnowledgeChatException("Failed to load embedding model", e) from e

    def load_llm(self, role: str):
        """
        Load and return the configured chat model for a role.
        Args:
            role: One of "rag", "synthesis", "persona", "course"

        Returns:
            Configured LangChain chat model
        """
        if role not in self.config.get("llm", {}):
            log.error("LLM role not found in config | role=%s", role)
            raise ValueError(f"LLM role '{role}' not found in config")

        llm_config = self.config["llm"][role]

        provider = llm_config["provider"]
        model = llm_config["model_name"]
        temp = llm_config.get("temperature")
        max_t = llm_config.get("max_tokens")

        log.info("Loading LLM | role=%s | provider=%s | model=%s", role, provider, model)

        if provider == "google":
            return ChatGoogleGenerativeAI(
                model=model,
                google_api_key=self.api_keys.get("GOOGLE_API_KEY"),
                temperature=temp,
                max_output_tokens=max_t,
            )

        if provider == "groq":
            return ChatGroq(
                model=model,
                api_key=self.api_keys.get("GROQ_API_KEY"),
                temperature=temp,
                max_tokens=max_t,
            )

        raise ValueError(f"Unsupported provider {provider}")
