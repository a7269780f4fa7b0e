"""
Prompt builders and localized stream messages.

Prompt wording is not part of any contract: parsers only rely on the JSON
shapes requested at the end of each prompt.
"""

from __future__ import annotations

from typing import Any

from lcr.types import Language, MarketQuote, SearchResult, TopicChain

# Max characters of each search result's content sent to fact extraction
RESULT_CONTENT_LIMIT = 1000

# Max facts listed verbatim in the synthesis prompt
SYNTHESIS_FACT_LIMIT = 50


def language_directive(language: Language) -> str:
    """Instruction appended to every prompt to pin the output language."""
    if language == Language.CN:
        return (
            "\n\n**重要语言要求**:\n"
            "- 你必须使用**简体中文**输出所有推理、分析和最终报告。\n"
            "- 搜索查询可以使用英文以获取更好的全球数据，但必须将发现翻译回中文。\n"
            "- 所有 JSON 结构中的值（如 step_name、reasoning、verdict 等）都必须是中文。\n"
            "- 数字和专有名词可以保留英文，但解释必须是中文。"
        )
    return (
        "\n\n**IMPORTANT LANGUAGE REQUIREMENT**:\n"
        "- You must output ALL reasoning, analysis, and final reports in **English**.\n"
        "- All values in JSON structures (such as step_name, reasoning, verdict, etc.) must be in English.\n"
        "- Use clear, professional financial language."
    )


def build_planning_prompt(ticker: str, language: Language) -> str:
    return f"""You are a senior investment analyst. For the stock ticker "{ticker}", create a comprehensive research investigation structure.

Generate 5-7 major research TOPICS, and for each topic, create a logical chain of investigation steps.
Each topic should have 3-5 sequential steps that build upon each other logically.

Example:
Topic: "Competitive Landscape"
- Step 1: Identify direct competitors
- Step 2: Compare market share and positioning
- Step 3: Analyze competitive advantages
- Step 4: Assess threat of new entrants

Return ONLY a JSON object with this EXACT structure:
{{
  "topics": [
    {{
      "topic": "Topic name",
      "chain": [
        {{
          "step_name": "Step 1: Description",
          "intent": "Why we're asking this - what we want to learn",
          "questions": ["specific search query 1", "specific search query 2"],
          "next_logic_step": "What to investigate next based on findings"
        }}
      ]
    }}
  ]
}}

Requirements:
- Steps should be logically sequential (each builds on the previous)
- Questions should be specific, searchable queries
- Intent should explain the reasoning

Return ONLY valid JSON, no markdown, no explanations.{language_directive(language)}"""


def build_fact_extraction_prompt(
    intent: str,
    results: list[SearchResult],
    language: Language,
) -> str:
    blocks = []
    for i, result in enumerate(results, start=1):
        content = (result.content or "")[:RESULT_CONTENT_LIMIT]
        blocks.append(f"Result {i}: {result.title}\n{content}\nSource: {result.link}")
    joined = "\n---\n".join(blocks)

    return f"""You are a fact extraction specialist. From the following search results, extract SPECIFIC FACTS that answer this question:

INTENT: {intent}

SEARCH RESULTS:
{joined}

Extract SPECIFIC FACTS including:
- Numbers (revenue, market cap, percentages)
- Dates (earnings dates, announcements, milestones)
- Named entities (companies, people, locations)

Return ONLY a JSON array of fact strings:
["Fact 1 with specific numbers/dates", "Fact 2 with specific numbers/dates"]

Each fact should be a complete sentence with specific data. Do not include generic statements.{language_directive(language)}"""


def build_reasoning_prompt(intent: str, findings: list[str], language: Language) -> str:
    facts = "\n".join(f"{i}. {f}" for i, f in enumerate(findings, start=1))
    return f"""Based on these facts, explain how they answer the intent:

INTENT: {intent}

FACTS:
{facts}

Provide a concise reasoning (2-3 sentences) explaining how these facts answer the intent.{language_directive(language)}"""


def _signed(value: float) -> str:
    return f"+{value:.2f}" if value >= 0 else f"{value:.2f}"


def build_synthesis_prompt(
    ticker: str,
    chains: list[TopicChain],
    quote: MarketQuote,
    language: Language,
) -> str:
    findings = [f for chain in chains for node in chain.nodes for f in node.findings]
    reasoning = [f"{node.step_name}: {node.reasoning}" for chain in chains for node in chain.nodes]

    topics = "\n".join(f"- {c.topic} ({c.total_nodes} steps)" for c in chains)
    facts = "\n".join(
        f"{i}. {f}" for i, f in enumerate(findings[:SYNTHESIS_FACT_LIMIT], start=1)
    )
    if len(findings) > SYNTHESIS_FACT_LIMIT:
        facts += f"\n\n... and {len(findings) - SYNTHESIS_FACT_LIMIT} more facts"
    market_cap = f"{quote.market_cap:,.0f}" if quote.market_cap else "N/A"

    return f"""You are a senior investment analyst. Synthesize all research findings into a comprehensive investment report.

STOCK TICKER: {ticker}

MARKET DATA:
- Current Price: {quote.price:.2f}
- Change: {_signed(quote.change)} ({_signed(quote.change_percent)}%)
- Market Cap: {market_cap}

RESEARCH TOPICS INVESTIGATED:
{topics}

KEY FINDINGS ({len(findings)} facts):
{facts}

REASONING CHAIN:
{chr(10).join(reasoning)}

Return ONLY a JSON object with this EXACT structure:
{{
  "narrative_arc": "What is the market narrative? Be specific with facts and numbers",
  "competitor_matrix": [
    {{
      "name": "Competitor name",
      "market_cap": "Market cap if found",
      "core_difference": "Key difference vs {ticker}",
      "resource_quality": "Resource quality if applicable"
    }}
  ],
  "financial_reality": {{
    "cash_burn_rate": "Cash burn analysis with specific numbers",
    "capex_cycle": "Capital expenditure cycle with specific numbers",
    "revenue_trend": "Revenue trend with specific numbers and dates"
  }},
  "marginal_changes": "What changed in the last 3 months? Use specific dates and facts",
  "verdict": "The brutal truth based on all {len(findings)} facts found"
}}

Use SPECIFIC FACTS from the research. Be brutally honest and direct.
Return ONLY the JSON object, no markdown, no explanations.{language_directive(language)}"""


def build_resolve_prompt(query: str) -> str:
    return f"""You are a financial entity resolver.
User Input: '{query}'.
Task: Identify the public company or companies associated with this input.

Rules:
1. If it is a specific company name, return its main listing ticker.
2. If it is a sector or concept, return the 3-5 most representative public companies.
3. Market priority: US > CN (A-share) > HK, unless the input is Chinese text or a Chinese company name, then prefer CN or HK listings.
4. Ticker formats: US symbol only ("AAPL"), CN 6-digit code ("600519"), HK 4-digit code + .HK ("9988.HK").
5. Return ONLY a JSON array:
   [{{"symbol": "...", "name": "...", "market": "US" | "CN" | "HK"}}]

Do not include markdown formatting or explanations."""


# ---------------------------------------------------------------------------
# Stream messages
# ---------------------------------------------------------------------------

MESSAGES: dict[Language, dict[str, str]] = {
    Language.EN: {
        "run_start": "Starting deep research with logical chains for {ticker}...",
        "plan_start": "Generating logical investigation chains for {ticker}...",
        "plan_done": "Generated {topics} topic chains with {steps} total investigation steps",
        "plan_fallback": "Planner output unusable ({reason}); using fallback chain",
        "chain_start": "Starting topic chain: {topic}",
        "node_start": "Executing: {step}",
        "search_query": "Searching: {question}",
        "search_results": "Found {count} results",
        "search_failed": "Search failed: {question}",
        "extracting": "Extracting facts from {count} search results...",
        "extraction_failed": "Fact extraction failed for {step}",
        "reasoning_fallback": "Found {count} facts related to {intent}",
        "node_done": "Completed {step}: Found {count} facts",
        "synthesizing": "Synthesizing all findings into comprehensive report...",
        "report_ready": "Report synthesized from {facts} facts",
        "saving": "Saving report to database...",
        "saved": "Report saved with ID: {report_id}",
        "save_failed": "Warning: Failed to save report to database: {error}",
        "error": "Error: {error}",
    },
    Language.CN: {
        "run_start": "正在启动 {ticker} 的逻辑链深度研究...",
        "plan_start": "正在为 {ticker} 生成逻辑调查链...",
        "plan_done": "已生成 {topics} 个主题链，共 {steps} 个调查步骤",
        "plan_fallback": "规划输出不可用（{reason}），使用备用调查链",
        "chain_start": "开始主题链: {topic}",
        "node_start": "执行: {step}",
        "search_query": "搜索: {question}",
        "search_results": "找到 {count} 个结果",
        "search_failed": "搜索失败: {question}",
        "extracting": "正在从 {count} 个搜索结果中提取事实...",
        "extraction_failed": "{step} 的事实提取失败",
        "reasoning_fallback": "找到 {count} 个与 {intent} 相关的事实",
        "node_done": "完成 {step}: 找到 {count} 个事实",
        "synthesizing": "正在将所有发现综合成综合报告...",
        "report_ready": "已基于 {facts} 个事实生成报告",
        "saving": "正在将报告保存到数据库...",
        "saved": "报告已保存，ID: {report_id}",
        "save_failed": "警告: 保存报告到数据库失败: {error}",
        "error": "错误: {error}",
    },
}


def message(language: Language, key: str, **kwargs: Any) -> str:
    """Format a localized stream message."""
    return MESSAGES[language][key].format(**kwargs)
