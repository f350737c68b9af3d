import openai
import instructor
import logging
import os
import time
from typing import List, Optional
from dataclasses import dataclass

from exceptions import AIProviderError
from models import AnalysisResult, BatchFeedbackAnalysis

logger = logging.getLogger(__name__)

CONTENT_TRUNCATE_CHARS = 500

# ============================================================================
# LLM CONFIGURATION
# ============================================================================

@dataclass
class LLMConfig:
    """Configuration for LLM client."""
    api_key: str
    base_url: Optional[str] = None  # For custom endpoints
    model: str = "gpt-4o-mini"
    max_tokens: int = 4000
    temperature: float = 0.2
    timeout: int = 60
    max_retries: int = 3
    retry_delay: float = 1.0
    summary_language: str = "Chinese"

# ============================================================================
# GENERIC LLM CLIENT
# ============================================================================

class GenericLLMClient:
    """Generic LLM client that can work with different OpenAI-compatible endpoints."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.client = self._initialize_client()
        self.instructor_client = instructor.from_openai(self.client)

        logger.info(f"Initialized LLM Client:")
        logger.info(f"  Model: {config.model}")
        logger.info(f"  Base URL: {config.base_url or 'OpenAI Default'}")
        logger.info(f"  Max Tokens: {config.max_tokens}")

    def _initialize_client(self) -> openai.OpenAI:
        """Initialize OpenAI client with custom configuration."""
        client_kwargs = {
            "api_key": self.config.api_key,
            "timeout": self.config.timeout,
            "max_retries": 0  # Retries are handled in analyze_feedback_batch
        }

        if self.config.base_url:
            client_kwargs["base_url"] = self.config.base_url
            logger.info(f"Using custom base URL: {self.config.base_url}")

        return openai.OpenAI(**client_kwargs)

    def test_connection(self) -> bool:
        """Test the LLM connection."""
        try:
            self.client.chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": "Hello"}],
                max_tokens=10,
                temperature=0
            )
            logger.info("✅ LLM connection test successful")
            return True
        except openai.OpenAIError as e:
            logger.error(f"❌ LLM connection test failed: {e}")
            return False

    def analyze_feedback_batch(self, contents: List[str]) -> List[AnalysisResult]:
        """Analyze a batch of feedback texts in one schema-constrained call.

        Returns one result per input in input order; a shorter list means the trailing
        inputs got no result. Raises AIProviderError when every attempt fails.
        """
        if not contents:
            return []

        prompt = self._create_batch_prompt(contents)
        base_tokens = 800
        tokens_per_message = 100
        max_tokens = min(base_tokens + len(contents) * tokens_per_message, self.config.max_tokens)
        last_error: Optional[Exception] = None

        for attempt in range(self.config.max_retries):
            try:
                response = self.instructor_client.chat.completions.create(
                    model=self.config.model,
                    response_model=BatchFeedbackAnalysis,
                    messages=[
                        {"role": "system", "content": self._get_system_prompt()},
                        {"role": "user", "content": prompt}
                    ],
                    max_tokens=max_tokens,
                    temperature=self.config.temperature
                )

                if not response.results:
                    raise AIProviderError("Empty response from AI")

                if len(response.results) != len(contents):
                    logger.warning(f"Batch result mismatch: expected {len(contents)}, got {len(response.results)}")

                return [result.to_result() for result in response.results[:len(contents)]]

            except openai.RateLimitError as e:
                last_error = e
                logger.warning(f"Rate limit error in batch (attempt {attempt + 1}): {e}")
                if attempt < self.config.max_retries - 1:
                    time.sleep(self.config.retry_delay * (attempt + 1) * 2)  # Longer delay for rate limits

            except openai.BadRequestError as e:
                # Content filtering and malformed requests will not succeed on retry
                logger.warning(f"Bad request in batch of {len(contents)} messages: {e}")
                raise AIProviderError(f"Bad request: {e}") from e

            except (openai.APIError, AIProviderError) as e:
                last_error = e
                logger.error(f"API error in batch (attempt {attempt + 1}): {e}")
                if attempt < self.config.max_retries - 1:
                    time.sleep(self.config.retry_delay * (attempt + 1))

            except Exception as e:
                # instructor validation/parse failures
                last_error = e
                logger.error(f"Unexpected error in batch analysis (attempt {attempt + 1}): {e}")
                if attempt < self.config.max_retries - 1:
                    time.sleep(self.config.retry_delay * (attempt + 1))

        raise AIProviderError(
            f"Batch analysis failed after {self.config.max_retries} attempts: {last_error}"
        ) from last_error

    def _get_system_prompt(self) -> str:
        """Get system prompt for feedback analysis."""
        return """You are an expert at analyzing user feedback for a mobile application.

For each feedback you receive, determine:
1. sentiment: "Positive", "Negative", or "Neutral"
2. category: "Bug Report", "Feature Request", "UX/UI", "Performance", or "Other"
3. tags: 2-5 short relevant tags
4. summary: one concise sentence

Return exactly one result per feedback, in the same order as the inputs."""

    def _create_batch_prompt(self, contents: List[str]) -> str:
        """Create prompt for batch analysis."""
        feedback_list = "\n\n".join(
            f"[{i}] {content[:CONTENT_TRUNCATE_CHARS]}" for i, content in enumerate(contents, 1)
        )

        return f"""Analyze the following {len(contents)} user feedbacks.
Write tags and summaries in {self.config.summary_language}.

Feedbacks:
{feedback_list}

Return {len(contents)} results, one for each feedback in order."""

# ============================================================================
# FACTORY FUNCTIONS
# ============================================================================

def create_client_from_env() -> GenericLLMClient:
    """Create LLM client from environment variables."""
    api_key = os.getenv("OPENAI_API_KEY")
    base_url = os.getenv("OPENAI_BASE_URL")
    model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    max_tokens = int(os.getenv("OPENAI_MAX_TOKENS", "4000"))
    temperature = float(os.getenv("OPENAI_TEMPERATURE", "0.2"))
    summary_language = os.getenv("SUMMARY_LANGUAGE", "Chinese")

    if not api_key:
        raise ValueError("OPENAI_API_KEY environment variable is required")

    config = LLMConfig(
        api_key=api_key,
        base_url=base_url,
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        summary_language=summary_language
    )

    return GenericLLMClient(config)
