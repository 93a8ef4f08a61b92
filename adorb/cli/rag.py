"""
RAG CLI Commands

Commands for scoring an ad against a population of historical ads, either a
JSON file or the Supabase orb table.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from ..api.models import DataNeedsResponse, PredictResponse, SimilarResponse, SuggestResponse
from ..core.config import FeatureFlags, load_rag_config
from ..services.rag import InMemoryOrbStore, OrbBuilder, RAGEngine, SupabaseOrbStore, ValidationError
from ..services.rag.models import RetrievalFilters


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


def _read_json(path: str) -> Any:
    with open(Path(path), "r") as f:
        return json.load(f)


def load_population(path: str) -> InMemoryOrbStore:
    """Build an in-memory store from a JSON list of ad payloads."""
    ads = _read_json(path)
    if not isinstance(ads, list):
        raise click.BadParameter("population file must contain a JSON list of ads", param_hint="--population")

    builder = OrbBuilder()
    orbs = []
    for ad in ads:
        try:
            orbs.append(builder.build(ad))
        except ValidationError as e:
            logger.warning(f"Skipping ad in population: {e}")
    return InMemoryOrbStore(orbs)


def _engine(population: Optional[str], embed: bool, config_path: Optional[str]) -> RAGEngine:
    store = load_population(population) if population else SupabaseOrbStore()
    provider = None
    if embed:
        from ..services.rag.embedding_provider import GeminiEmbeddingProvider
        provider = GeminiEmbeddingProvider()
    return RAGEngine(
        store=store,
        embedding_provider=provider,
        config=load_rag_config(config_path),
        flags=FeatureFlags.from_env(),
    )


def _load_ad(ad_file: str) -> Dict[str, Any]:
    ad = _read_json(ad_file)
    if not isinstance(ad, dict):
        raise click.BadParameter("ad file must contain a JSON object", param_hint="AD_FILE")
    return ad


def _echo_json(model) -> None:
    click.echo(json.dumps(model.model_dump(mode="json"), indent=2))


def engine_options(func):
    func = click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
                        help="YAML file with engine configuration overrides")(func)
    func = click.option("--embed/--no-embed", default=False,
                        help="Embed with Gemini (needs GEMINI_API_KEY); default is structured-only")(func)
    func = click.option("--population", type=click.Path(exists=True, dir_okay=False),
                        help="JSON list of historical ads (default: Supabase orb table)")(func)
    func = click.option("--json", "as_json", is_flag=True, help="Print the raw JSON response")(func)
    return func


@click.group(name="rag")
def rag_group():
    """Predict, retrieve, find data gaps and suggest variants with the RAG engine."""
    pass


@rag_group.command(name="predict")
@click.argument("ad_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--rag-only", is_flag=True, help="Skip the heuristic blend")
@engine_options
def predict_command(ad_file: str, rag_only: bool, as_json: bool, population: Optional[str],
                    embed: bool, config_path: Optional[str]):
    """
    Predict success for the ad in AD_FILE.

    Example:
        adorb rag predict new_ad.json --population history.json
    """
    engine = _engine(population, embed, config_path)
    try:
        prediction = asyncio.run(engine.predict(_load_ad(ad_file), use_hybrid=not rag_only))
    except ValidationError as e:
        raise click.ClickException(f"Invalid ad: {e}")

    response = PredictResponse.from_prediction(prediction)
    if as_json:
        _echo_json(response)
        return

    click.echo(f"\n📈 Success probability: {response.success_probability:.1f}")
    click.echo(f"   Confidence: {response.confidence:.1f}  Method: {response.method}")
    if response.rag_score is not None:
        click.echo(f"   RAG score: {response.rag_score:.1f}  Blend alpha: {response.blend_alpha:.2f}")
    if response.fallback_reason:
        click.echo(f"⚠️  Fallback: {response.fallback_reason}")
    click.echo(f"\n{response.explanation}")

    if response.trait_effects:
        click.echo("\n🔍 Trait effects:")
        for effect in response.trait_effects:
            lift = f"{effect.lift:+.1f}"
            click.echo(f"   {effect.label:<30} {lift:>7}  conf {effect.confidence:.2f}  [{effect.direction}]")

    if response.recommendations:
        click.echo("\n💡 Recommendations:")
        for rec in response.recommendations:
            click.echo(f"   - {rec}")


@rag_group.command(name="similar")
@click.argument("ad_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-k", "k", type=int, help="Number of neighbors")
@click.option("--platform", help="Only neighbors on this platform")
@click.option("--max-age-days", type=float, help="Only neighbors newer than this")
@click.option("--include-without-results", is_flag=True, help="Include ads without outcome data")
@engine_options
def similar_command(ad_file: str, k: Optional[int], platform: Optional[str], max_age_days: Optional[float],
                    include_without_results: bool, as_json: bool, population: Optional[str],
                    embed: bool, config_path: Optional[str]):
    """
    List the historical ads most similar to the ad in AD_FILE.

    Example:
        adorb rag similar new_ad.json --population history.json -k 5
    """
    engine = _engine(population, embed, config_path)
    filters = RetrievalFilters(platform=platform, max_age_days=max_age_days)
    try:
        result = asyncio.run(engine.find_similar(
            _load_ad(ad_file), k=k, filters=filters, include_without_results=include_without_results
        ))
    except ValidationError as e:
        raise click.ClickException(f"Invalid ad: {e}")

    response = SimilarResponse.from_result(result)
    if as_json:
        _echo_json(response)
        return

    stats = response.stats
    click.echo(f"\n🔍 {stats.count} similar ads (avg similarity {stats.avg_similarity:.2f})")
    for n in response.neighbors:
        score = f"{n.success_score:.1f}" if n.success_score is not None else "-"
        click.echo(
            f"   {n.id:<24} weighted {n.weighted_similarity:.2f}  hybrid {n.hybrid_similarity:.2f}  "
            f"recency {n.recency_weight:.2f}  score {score}"
        )


@rag_group.command(name="gaps")
@click.argument("ad_file", type=click.Path(exists=True, dir_okay=False))
@engine_options
def gaps_command(ad_file: str, as_json: bool, population: Optional[str], embed: bool, config_path: Optional[str]):
    """
    Show the data gaps limiting prediction confidence for the ad in AD_FILE.

    Example:
        adorb rag gaps new_ad.json --population history.json
    """
    engine = _engine(population, embed, config_path)
    try:
        analysis = asyncio.run(engine.detect_gaps(_load_ad(ad_file)))
    except ValidationError as e:
        raise click.ClickException(f"Invalid ad: {e}")

    response = DataNeedsResponse.from_analysis(analysis)
    if as_json:
        _echo_json(response)
        return

    if not response.data_needs:
        click.echo("✅ No significant data gaps")
        return

    flag = "⚠️  Significant gaps" if response.has_significant_gaps else "Minor gaps"
    click.echo(f"\n{flag}: {response.total_gaps} (confidence {response.current_confidence:.0f} "
               f"-> {response.potential_confidence:.0f})")
    for need in response.data_needs:
        click.echo(f"   [{need['severity']}] {need['dimension']}={need['value']}: {need['reason']}")


@rag_group.command(name="suggest")
@click.argument("ad_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-n", "--max-suggestions", type=int, help="Maximum number of variants")
@engine_options
def suggest_command(ad_file: str, max_suggestions: Optional[int], as_json: bool, population: Optional[str],
                    embed: bool, config_path: Optional[str]):
    """
    Suggest scored variants of the ad in AD_FILE, one experimental lever each.

    Example:
        adorb rag suggest new_ad.json --population history.json -n 2
    """
    engine = _engine(population, embed, config_path)
    try:
        result = asyncio.run(engine.suggest(_load_ad(ad_file), max_suggestions=max_suggestions))
    except ValidationError as e:
        raise click.ClickException(f"Invalid ad: {e}")

    response = SuggestResponse.from_result(result)
    if as_json:
        _echo_json(response)
        return

    if not response.generated:
        click.echo(f"No suggestions: {response.reason}")
        return

    click.echo(f"\n🧪 {len(response.suggestions)} suggestion(s) ({response.trigger}: {response.reason})")
    for s in response.suggestions:
        score = f"{s.predicted_score:.1f}" if s.predicted_score is not None else "-"
        click.echo(f"   {s.lever:<14} score {score}  {s.reason}")


@rag_group.command(name="ingest")
@click.argument("ads_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--embed/--no-embed", default=False, help="Embed with Gemini before saving")
def ingest_command(ads_file: str, embed: bool):
    """
    Ingest a JSON list of ads into the Supabase orb table.

    Example:
        adorb rag ingest history.json --embed
    """
    ads = _read_json(ads_file)
    if not isinstance(ads, list):
        ads = [ads]

    engine = _engine(None, embed, None)
    results: Dict[str, List[str]] = {"saved": [], "failed": []}

    async def _ingest_all():
        for ad in ads:
            try:
                orb = await engine.ingest(ad)
                results["saved"].append(orb.id)
            except (ValidationError, ValueError) as e:
                click.echo(f"❌ {ad.get('id') if isinstance(ad, dict) else ad}: {e}", err=True)
                results["failed"].append(str(ad.get("id")) if isinstance(ad, dict) else "?")

    asyncio.run(_ingest_all())
    click.echo(f"✅ Saved {len(results['saved'])} orb(s), {len(results['failed'])} failed")
