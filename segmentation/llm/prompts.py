"""
Prompt templates for segment execution and answer composition.

Segment prompts ask for a small JSON object so the runner can parse findings;
the answer prompt turns the mechanical summary into a readable reply.
"""

from typing import Dict, List

from langchain_core.prompts import PromptTemplate

# ==============================================================================
# SEGMENT RESEARCH
# ==============================================================================

SEGMENT_RESEARCH_TEMPLATE = """You are a research assistant answering one part of a larger query.

{enriched_query}

Provide:
1. Key entities (names, places, things)
2. Important facts
3. Sources (if applicable)

Format your response as JSON:
{{
  "entities": {{"entity_name": "entity_value"}},
  "facts": ["fact1", "fact2"],
  "sources": ["source1", "source2"],
  "results": [{{"title": "title", "url": "url", "snippet": "snippet", "score": 0.8}}],
  "contradictions": []
}}"""

SEGMENT_ANALYSIS_TEMPLATE = """You are a data analysis assistant combining earlier research.

{enriched_query}

Compare and analyze the context above. Return results as JSON:
{{
  "entities": {{"entity_name": "analyzed_value"}},
  "facts": ["finding1", "finding2"],
  "sources": ["analysis_method"],
  "contradictions": ["conflicting statement, if any"]
}}"""

segment_research_prompt = PromptTemplate(
    template=SEGMENT_RESEARCH_TEMPLATE,
    input_variables=["enriched_query"],
)

segment_analysis_prompt = PromptTemplate(
    template=SEGMENT_ANALYSIS_TEMPLATE,
    input_variables=["enriched_query"],
)

# ==============================================================================
# ANSWER COMPOSITION
# ==============================================================================

ANSWER_COMPOSITION_TEMPLATE = """You are synthesizing results from a multi-segment search.

Original Query: "{query}"

Segment summary:
{summary}

Top sources:
{sources}

Write a direct, well-organized answer that:
1. Addresses the original query
2. Combines information from all segments coherently
3. Acknowledges any limitations or uncertainties

Answer in plain prose without JSON."""

answer_composition_prompt = PromptTemplate(
    template=ANSWER_COMPOSITION_TEMPLATE,
    input_variables=["query", "summary", "sources"],
)


def build_enriched_query(text: str, context_facts: List[str]) -> str:
    """Prefix the segment text with facts from its dependencies."""
    if not context_facts:
        return f"Query: {text}"
    return f"Context: {'. '.join(context_facts)}\n\nQuery: {text}"


def render_segment_prompt(segment_type: str, text: str, context_facts: List[str]) -> str:
    """Render the research prompt, or the analysis prompt for synthesis segments."""
    template = segment_analysis_prompt if segment_type == "synthesis" else segment_research_prompt
    return template.format(enriched_query=build_enriched_query(text, context_facts))


def render_answer_prompt(query: str, summary: str, sources: List[Dict[str, str]]) -> str:
    source_lines = "\n".join(
        f"[{i}] {source.get('title') or source.get('url')} ({source.get('url')})"
        for i, source in enumerate(sources, 1)
    ) or "None"
    return answer_composition_prompt.format(query=query, summary=summary, sources=source_lines)
