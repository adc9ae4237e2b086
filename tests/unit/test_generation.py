from collections import Counter

import pytest

from models.schemas import (
    AspectSentimentList,
    Brand,
    BrandList,
    EnrichedSource,
    Entity,
    EntityList,
    Funnel,
    FunnelCategory,
    FunnelStage,
    KeywordLabels,
    KeywordRecord,
    KeywordSeeds,
    Persona,
    PersonaList,
    PipelineContext,
    Product,
    PurchaseProbability,
    SourceCategory,
    SourceCategoryList,
    TopicGroup,
    TopicTaxonomy,
    TranslatedPrompt,
)
from services.generation import GenerationError, LLMAuditCollaborators
from services.structured_completion import CompletionResult
from workers.pipeline import AuditConfig

CONFIG = AuditConfig(brand="EF", sector="Language schools", language_code="en", country_code="us", num_personas=2)


class ScriptedCompletions:
    """Answers each request with ``responders[schema name](prompt)``; ``None`` means a failed completion."""

    def __init__(self, responders):
        self.responders = responders
        self.calls = Counter()
        self.models = []

    async def complete(self, prompt, model, schema=None):
        name = schema.__name__
        self.calls[name] += 1
        self.models.append((name, model))
        parsed = self.responders[name](prompt)
        if parsed is None:
            return CompletionResult(parsed=None, raw_text="{}", error=ValueError("invalid"))
        return CompletionResult(parsed=parsed, raw_text="{}")


class FakePlanner:
    def __init__(self):
        self.calls = []

    async def expand(self, seed_groups, language, country=None, ideas_from_seeds=True):
        self.calls.append((list(seed_groups), language, country, ideas_from_seeds))
        return [[KeywordRecord(keyword="x")] for _ in seed_groups]


class FakeRouter:
    async def query(self, prompts, model, country=None):
        return [(p, model, country) for p in prompts]


def make_collaborators(responders):
    completions = ScriptedCompletions(responders)
    planner = FakePlanner()
    collaborators = LLMAuditCollaborators(
        completions, planner, FakeRouter(), model="big", mini_model="mini", max_workers=3
    )
    return collaborators, completions, planner


def context_responders(brand_info=True):
    return {
        "Brand": lambda p: (
            Brand(name="EF Education First", short_name="EF", domain="https://www.ef.com/en", portfolio=[Product(name="Kids")])
            if brand_info
            else None
        ),
        "BrandList": lambda p: BrandList(
            brands=[Brand(name="Babbel", short_name="Babbel", domain="babbel.com", portfolio=[Product(name="App")])]
        ),
        "KeywordSeeds": lambda p: KeywordSeeds(keywords=["seed for kids"] if "Kids" in p else ["seed for app"]),
        "PersonaList": lambda p: PersonaList(personas=[Persona(name="Parent"), Persona(name="Student")]),
        "Funnel": lambda p: Funnel(stages=[FunnelStage(stage="Awareness", categories=[FunnelCategory(name="Problems")])]),
    }


@pytest.mark.asyncio
async def test_generate_context():
    collaborators, completions, _ = make_collaborators(context_responders())

    context = await collaborators.generate_context(CONFIG)

    assert [(b.short_name, b.is_competitor) for b in context.brands] == [("EF", False), ("Babbel", True)]
    assert context.own_brand.domain == "ef.com"
    assert context.brands[0].portfolio[0].keyword_seeds == ["seed for kids"]
    assert context.brands[1].portfolio[0].keyword_seeds == ["seed for app"]
    assert [p.name for p in context.personas] == ["Parent", "Student"]
    assert context.funnel.stages[0].stage == "Awareness"
    assert ("Brand", "big") in completions.models
    assert ("KeywordSeeds", "mini") in completions.models


@pytest.mark.asyncio
async def test_generate_context_fails_without_brand_info():
    collaborators, _, _ = make_collaborators(context_responders(brand_info=False))

    with pytest.raises(GenerationError, match="Brand"):
        await collaborators.generate_context(CONFIG)


@pytest.mark.asyncio
async def test_failed_portfolio_seeds_leave_product_without_seeds():
    responders = context_responders()
    responders["KeywordSeeds"] = lambda p: None
    collaborators, _, _ = make_collaborators(responders)

    brand = await collaborators.generate_brand_info(CONFIG)

    assert brand.portfolio[0].keyword_seeds == []


@pytest.mark.asyncio
async def test_expand_keywords_passes_config():
    collaborators, _, planner = make_collaborators({})

    groups = await collaborators.expand_keywords([["a"], "b"], CONFIG)

    assert len(groups) == 2
    assert planner.calls == [([["a"], "b"], "en", "us", True)]


@pytest.mark.asyncio
async def test_label_keywords_falls_back_to_empty_labels():
    responders = {
        "TopicTaxonomy": lambda p: TopicTaxonomy(topics=[TopicGroup(topic="Courses", subtopics=["Kids"])]),
        "KeywordLabels": lambda p: None if '"bad"' in p else KeywordLabels(topic="Courses", subtopic="Kids"),
    }
    collaborators, completions, _ = make_collaborators(responders)
    context = PipelineContext(brands=[])

    labels = await collaborators.label_keywords(["ef kids", "bad"], context)

    assert labels == [KeywordLabels(topic="Courses", subtopic="Kids"), KeywordLabels()]
    assert completions.calls["TopicTaxonomy"] == 1
    assert completions.calls["KeywordLabels"] == 2


@pytest.mark.asyncio
async def test_label_no_keywords_makes_no_calls():
    collaborators, completions, _ = make_collaborators({})

    assert await collaborators.label_keywords([], PipelineContext(brands=[])) == []
    assert sum(completions.calls.values()) == 0


@pytest.mark.asyncio
async def test_translate_keywords():
    responders = {"TranslatedPrompt": lambda p: None if '"b"' in p else TranslatedPrompt(prompt="What is a?")}
    collaborators, _, _ = make_collaborators(responders)

    assert await collaborators.translate_keywords(["a", "b"], "en") == ["What is a?", None]


@pytest.mark.asyncio
async def test_query_model_uses_router():
    collaborators, _, _ = make_collaborators({})

    assert await collaborators.query_model(["p"], "google/ai-mode", "us") == [("p", "google/ai-mode", "us")]


@pytest.mark.asyncio
async def test_categorize_sources_by_index():
    responders = {
        "SourceCategoryList": lambda p: SourceCategoryList(
            categories=[
                SourceCategory(index=1, category="news & media", subcategory="press"),
                SourceCategory(index=7, category="out of range"),
            ]
        )
    }
    collaborators, completions, _ = make_collaborators(responders)
    sources = [EnrichedSource(title="EF", url="https://ef.com"), EnrichedSource(title="News", url="https://news.com")]

    categorized = await collaborators.categorize_sources([sources, []])

    assert [s.category for s in categorized[0]] == [None, "news & media"]
    assert categorized[0][1].subcategory == "press"
    assert categorized[1] == []
    assert completions.calls["SourceCategoryList"] == 1


@pytest.mark.asyncio
async def test_answer_analyses_skip_empty_answers():
    responders = {
        "AspectSentimentList": lambda p: AspectSentimentList(sentiments=[{"aspect": "price", "sentiment": "negative"}]),
        "EntityList": lambda p: EntityList(entities=[Entity(name="EF", type="brand")]),
        "PurchaseProbability": lambda p: PurchaseProbability(probability=0.7),
    }
    collaborators, completions, _ = make_collaborators(responders)
    answers = ["EF is pricey", ""]

    sentiments = await collaborators.aspect_sentiments(answers, Brand(name="EF", short_name="EF", domain="ef.com"))
    entities = await collaborators.extract_entities(answers)
    probabilities = await collaborators.purchase_probabilities(answers)

    assert [len(s) for s in sentiments] == [1, 0]
    assert entities == [[Entity(name="EF", type="brand")], []]
    assert probabilities == [0.7, None]
    assert completions.calls == Counter({"AspectSentimentList": 1, "EntityList": 1, "PurchaseProbability": 1})
