from decision_xray.capture.builder import create_xray
from decision_xray.config import XRayConfig
from decision_xray.store.trace_store import InMemoryTraceStore
from decision_xray.types import CandidateEvaluation, FilterResult

REFERENCE = {"asin": "B0XYZ123", "title": "ProBrand Steel Bottle 32oz Insulated", "price": 29.99}

CANDIDATES = [
    {"asin": "B0COMP01", "title": "HydroFlask 32oz Wide Mouth", "price": 44.99, "rating": 4.5, "reviews": 8932},
    {"asin": "B0COMP02", "title": "Yeti Rambler 26oz", "price": 34.99, "rating": 4.4, "reviews": 5621},
    {"asin": "B0COMP03", "title": "Generic Water Bottle", "price": 8.99, "rating": 3.2, "reviews": 45},
    {"asin": "B0COMP04", "title": "Bottle Cleaning Brush Set", "price": 12.99, "rating": 4.6, "reviews": 3421},
    {"asin": "B0COMP05", "title": "Replacement Lid for HydroFlask", "price": 9.99, "rating": 4.1, "reviews": 892},
    {"asin": "B0COMP06", "title": "Water Bottle Carrier Bag with Strap", "price": 15.99, "rating": 4.3, "reviews": 1567},
    {"asin": "B0COMP07", "title": "Stanley Adventure Quencher", "price": 35.00, "rating": 4.3, "reviews": 4102},
    {"asin": "B0COMP08", "title": "Contigo Autoseal 24oz", "price": 22.99, "rating": 4.1, "reviews": 2891},
    {"asin": "B0COMP09", "title": "Premium Titanium Bottle 40oz", "price": 89.00, "rating": 4.8, "reviews": 234},
    {"asin": "B0COMP10", "title": "CamelBak Chute Mag 32oz", "price": 28.99, "rating": 4.4, "reviews": 3567},
    {"asin": "B0COMP11", "title": "Nalgene Wide Mouth 32oz", "price": 16.49, "rating": 4.2, "reviews": 6789},
    {"asin": "B0COMP12", "title": "Thermos Stainless King 24oz", "price": 26.99, "rating": 4.3, "reviews": 4123},
]


def _evaluate(product: dict[str, object], price_min: float, price_max: float) -> CandidateEvaluation:
    price = float(product["price"])  # type: ignore[arg-type]
    rating = float(product["rating"])  # type: ignore[arg-type]
    reviews = int(product["reviews"])  # type: ignore[arg-type]
    results = {
        "priceRange": FilterResult(
            passed=price_min <= price <= price_max,
            detail=f"${price:.2f} vs ${price_min:.2f}-${price_max:.2f}",
        ),
        "minRating": FilterResult(passed=rating >= 3.8, detail=f"{rating} vs 3.8"),
        "minReviews": FilterResult(passed=reviews >= 100, detail=f"{reviews} vs 100"),
    }
    return CandidateEvaluation(
        id=str(product["asin"]),
        data=product,
        filter_results=results,
        qualified=all(result.passed for result in results.values()),
    )


def test_filter_step_counts_and_store_lookup() -> None:
    store = InMemoryTraceStore()
    xray = create_xray(
        XRayConfig(
            execution_name="Competitor Product Selection",
            context={"referenceProduct": REFERENCE},
            tags=["competitor-analysis", "product-matching"],
        ),
        store=store,
    )

    evaluations = [_evaluate(product, 15, 60) for product in CANDIDATES]
    assert sum(e.qualified for e in evaluations) == 8

    step = (
        xray.step("Apply Filters", "filter")
        .with_input({"candidatesCount": 12})
        .with_filters({"priceRange": {"value": {"min": 15, "max": 60}, "rule": "0.5x-2x"}})
        .with_evaluations(evaluations)
        .with_reasoning("Applied price, rating and review filters; 4 products eliminated.")
        .complete({"passed": 8, "failed": 4})
    )

    assert step.status == "completed"
    assert step.metrics is not None
    assert step.metrics.passed_count == 8
    assert step.metrics.failed_count == 4
    assert step.metrics.input_count == 12

    xray.finalize({"selectedCompetitor": "B0COMP01"})
    assert xray.id in {e.id for e in store.find_by_status("completed")}


def test_full_pipeline_round_trips_through_store() -> None:
    store = InMemoryTraceStore()
    xray = create_xray(
        XRayConfig(execution_name="Competitor Product Selection", tags=["live-demo"]),
        store=store,
    )

    xray.step("Keyword Generation", "llm").with_input({"title": REFERENCE["title"]}).with_evaluations(
        [_evaluate(p, 15, 60) for p in CANDIDATES[:3]]
    ).with_reasoning("Extracted material, capacity and insulation.").complete(
        {"keywords": ["insulated bottle"]}, {"output_count": 1}
    )
    xray.step("Candidate Search", "search").with_evaluations(
        [_evaluate(p, 15, 60) for p in CANDIDATES]
    ).with_reasoning("Fetched top results by relevance.").complete({"candidatesFetched": 12})
    xray.step("Apply Filters", "filter").with_filters(
        {
            "priceRange": {"value": {"min": 15, "max": 60}, "rule": "0.5x-2x of reference price"},
            "minRating": {"value": 3.8, "rule": "Must be at least 3.8 stars"},
        }
    ).with_evaluations([_evaluate(p, 15, 60) for p in CANDIDATES]).with_reasoning(
        "Narrowed 12 candidates to 8."
    ).complete({"passed": 8, "failed": 4})
    xray.step("LLM Relevance Evaluation", "llm").with_evaluations(
        [_evaluate(p, 15, 60) for p in CANDIDATES[:5]]
    ).with_reasoning("Removed accessories and replacement parts.").complete({"confirmed": 3})
    xray.step("Rank & Select", "rank").with_evaluations(
        [
            CandidateEvaluation(
                id=asin,
                data={"asin": asin},
                qualified=True,
                score=score,
                score_breakdown={"reviewCountScore": score},
                rank=rank,
            )
            for rank, (asin, score) in enumerate(
                [("B0COMP01", 0.92), ("B0COMP02", 0.74), ("B0COMP07", 0.65)], start=1
            )
        ]
    ).with_reasoning("HydroFlask has the highest weighted score.").complete(
        {"selectedCompetitor": "B0COMP01"}
    )

    execution = xray.finalize({"selectedCompetitor": "B0COMP01"})

    assert len(execution.steps) == 5
    assert all(step.status == "completed" for step in execution.steps)
    assert store.get(execution.id) == execution
    assert store.find_by_tags(["live-demo"])[0] == execution
