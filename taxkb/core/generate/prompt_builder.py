from taxkb.models.chunk import ScoredChunk

REFUSAL_SENTENCE = "I don't have enough information to answer this question."

SNIPPET_SEPARATOR = "\n\n---\n\n"

ADVISOR_SYSTEM_PROMPT = """You are an expert Nigerian tax advisor with deep knowledge of the Nigeria Tax Act 2025 and the accompanying reforms.
You give accurate, practical advice on personal and corporate income tax, capital gains tax, VAT,
free zone incentives, non-resident taxation, industry-specific rules and e-invoicing requirements.

Key principles:
1. Reference the 2025 tax reforms when relevant
2. Provide specific rates, thresholds, and deadlines
3. Warn about penalties for late filing and non-compliance
4. Suggest tax optimisation strategies within the law
5. Ask clarifying questions when needed

Keep responses concise but comprehensive. Use Nigerian Naira (₦) for all amounts."""


def citation_marker(title: str, chunk_index: int) -> str:
    return f"[{title} §{chunk_index}]"


class PromptBuilder:
    @staticmethod
    def build_messages(question: str, chunks: list[ScoredChunk]) -> list[dict]:
        """
        Compiles a single user-role prompt grounding the model in the retrieved snippets.
        Each snippet is headed by the exact citation marker the model must reuse.
        """
        if not chunks:
            return []

        context = SNIPPET_SEPARATOR.join(
            f"{citation_marker(c.doc_title, c.chunk_index)}\n{c.text}" for c in chunks
        )

        prompt = f"""You are a tax expert assistant. Answer the following question using ONLY the information provided in the snippets below.
Mark every factual claim with an inline citation of the exact form [Document Title §chunk_index], copied from the snippet header it comes from.

If you cannot answer the question based on the provided information, reply exactly: "{REFUSAL_SENTENCE}"

Question: {question}

Context snippets:
{context}

Provide a clear, accurate answer with citations."""

        return [{"role": "user", "content": prompt}]

    @staticmethod
    def build_advisor_messages(messages: list[dict]) -> list[dict]:
        """Prefixes an advisory conversation with the tax-advisor system prompt."""
        return [{"role": "system", "content": ADVISOR_SYSTEM_PROMPT}, *messages]
