"""Prompt loading and rendering utilities."""

from prompts.loader import get_prompt_path, list_prompts, load_prompt, reload_prompts

__all__ = ["load_prompt", "get_prompt_path", "list_prompts", "reload_prompts"]
