"""Prompt Builder for document chat.

Responsible solely for constructing the generation request given:
    - the assembled document context
    - recent answered turns
    - the user's message

Pure functions (no I/O / network); easy to unit test.
"""
from __future__ import annotations

from typing import Any, Dict, List


class PromptBuilder:
    SYSTEM_INSTRUCTIONS = (
        "You are a helpful study assistant replying to user messages about an attached document.\n\n"
        "IMPORTANT INSTRUCTIONS:\n"
        "- Ground your answer in the document content when it is relevant\n"
        "- If the document doesn't contain the answer, say so clearly before answering from general knowledge\n"
        "- Quote short phrases from the document when they support the answer\n"
        "- Be concise but thorough\n"
    )

    NO_DOCUMENT_NOTICE = "[No document content is available for this conversation]"

    def build_system(self, context_text: str) -> List[Dict[str, Any]]:
        """Fixed instructions block + dynamic document block.

        The document block is marked cacheable; repeated questions on the same
        document reuse it.
        """
        blocks: List[Dict[str, Any]] = [{"type": "text", "text": self.SYSTEM_INSTRUCTIONS}]
        if context_text and context_text.strip():
            blocks.append({
                "type": "text",
                "text": f"Document content:\n{context_text}",
                "cache_control": {"type": "ephemeral"},
            })
        else:
            blocks.append({"type": "text", "text": f"Document content:\n{self.NO_DOCUMENT_NOTICE}"})
        return blocks

    def build_messages(self, history: List[Dict[str, str]], user_message: str) -> List[Dict[str, str]]:
        """Conversation turns ending with the user's message.

        The messages API wants strictly alternating roles starting with "user",
        so leading assistant turns are dropped and same-role runs are merged.
        """
        turns = [
            {"role": m["role"], "content": m["content"]}
            for m in history
            if m.get("role") in ("user", "assistant") and (m.get("content") or "").strip()
        ]
        turns.append({"role": "user", "content": user_message})

        while turns and turns[0]["role"] != "user":
            turns.pop(0)

        merged: List[Dict[str, str]] = []
        for turn in turns:
            if merged and merged[-1]["role"] == turn["role"]:
                merged[-1]["content"] = f"{merged[-1]['content']}\n\n{turn['content']}"
            else:
                merged.append(dict(turn))
        return merged
