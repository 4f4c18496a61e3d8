"""Error Handler - provides user-friendly error messages for scene and batch failures."""

from typing import Optional


def format_error_message(
    operation: str,
    error: Exception,
    context: Optional[dict] = None,
    suggestion: Optional[str] = None,
) -> str:
    """
    Format a user-friendly error message.

    Args:
        operation: What operation was being performed (e.g., "Composing scene clip")
        error: The exception that occurred
        context: Additional context (e.g., {"job_id": "job_123", "scene_id": "s1"})
        suggestion: Optional suggestion for how to fix the issue

    Returns:
        Formatted error message
    """
    error_type = type(error).__name__
    error_msg = str(error)

    # Build context string
    context_str = ""
    if context:
        context_parts = [f"{k}={v}" for k, v in context.items()]
        context_str = f" ({', '.join(context_parts)})"

    # Build message
    message = f"❌ {operation} failed{context_str}\n"
    message += f"   Error: {error_type}: {error_msg}"

    if suggestion:
        message += f"\n   💡 Suggestion: {suggestion}"

    return message


def format_scene_error(operation: str, error: Exception) -> str:
    """One-line message stored on a failed scene."""
    return f"{operation} failed: {type(error).__name__}: {error}"


def get_fallback_suggestion(service: str, error: Exception) -> Optional[str]:
    """
    Get a suggestion for how to handle a service failure.

    Args:
        service: Service name ("TTS", "Image Generation", "Composition", "Concatenation")
        error: The exception

    Returns:
        Suggestion string or None
    """
    error_msg = str(error).lower()

    if service == "TTS":
        if "api key" in error_msg or "not configured" in error_msg:
            return "Check your TTS API key in .env file, or unset it to use stub audio (silent)."
        elif "rate limit" in error_msg or "429" in error_msg:
            return "Rate limit exceeded. The limiter has slowed down; retry the failed scenes in a few minutes."
        elif "network" in error_msg or "timeout" in error_msg:
            return "Network error. Check your internet connection and retry the failed scenes."
        else:
            return "TTS generation failed. Retry the failed scenes."

    elif service == "Image Generation":
        if "api key" in error_msg or "not configured" in error_msg:
            return "Check your HF_ENDPOINT_URL and HF_ENDPOINT_TOKEN in .env file."
        elif "content" in error_msg or "blocked" in error_msg:
            return "The prompt was refused by the content filter. Rephrase the scene prompt."
        elif "rate limit" in error_msg or "429" in error_msg or "quota" in error_msg:
            return "Quota exhausted. Add fallback tokens (HF_FALLBACK_TOKENS) or wait before retrying."
        elif "503" in error_msg or "unavailable" in error_msg or "overloaded" in error_msg:
            return "Endpoint is overloaded. Configure HF_FALLBACK_ENDPOINT_URLS or retry later."
        elif "network" in error_msg or "timeout" in error_msg:
            return "Network error. Check your internet connection."
        else:
            return "Image generation failed. Retry the failed scenes."

    elif service == "Composition":
        if "timed out" in error_msg:
            return "Scene composition timed out. Raise SCENE_COMPOSE_TIMEOUT_SECONDS or shorten the scene."
        elif "killed by the os" in error_msg or "memory" in error_msg:
            return "The encoder ran out of memory. Free memory on the host or lower the output resolution."
        elif "no such file" in error_msg or "not found" in error_msg:
            return "A media file is missing. Check that ffmpeg is installed and the asset still exists."
        else:
            return "Scene composition failed. Check the ffmpeg output in the logs."

    elif service == "Concatenation":
        if "no clips" in error_msg:
            return "No scene completed. Retry the failed scenes first."
        else:
            return "All concatenation strategies failed. Check disk space and the ffmpeg output in the logs."

    return None
