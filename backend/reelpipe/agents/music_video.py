"""Agents for the music video pipeline.

song_architect -> suno_expert -> song_selector -> visual_designer.
"""

import json
import logging
from typing import Any

from reelpipe.agents.base import Agent, AgentContext, SubmittingAgent, pending_result
from reelpipe.orchestrator.registry import StepId
from reelpipe.services.providers.base import IMAGE, MUSIC

logger = logging.getLogger(__name__)


class SongArchitectAgent(Agent):
    step = StepId.SONG_ARCHITECT
    system_prompt = (
        "You are a hit songwriter. Design a song from a brief. Respond with a JSON "
        "object with keys: song_title, hook, mood, genre, bpm, structure (list of "
        "section names), lyrics, concept_summary."
    )

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        brief = input.get("song_brief") or input["theme"]
        duration = input.get("duration", 60)

        await ctx.info(f"Designing song for brief: {brief[:100]}")
        await ctx.progress(20, "Writing song concept...")
        raw = await self.ask(ctx, f"Song brief: {brief}\nTarget length: {duration} seconds")

        if not raw.get("lyrics"):
            raise self.fail("Model returned a song without lyrics")
        await ctx.progress(90, "Song concept ready")
        return {
            "song_title": raw.get("song_title") or "Untitled",
            "hook": raw.get("hook", ""),
            "mood": raw.get("mood", "uplifting"),
            "genre": raw.get("genre", "pop"),
            "bpm": raw.get("bpm") or 120,
            "structure": raw.get("structure") if isinstance(raw.get("structure"), list) else [],
            "lyrics": raw["lyrics"],
            "concept_summary": raw.get("concept_summary", ""),
        }


class SunoExpertAgent(SubmittingAgent):
    """Optimizes the song for Suno and submits it as a generation job."""

    step = StepId.SUNO_EXPERT
    system_prompt = (
        "You are a Suno prompt engineer. Respond with a JSON object with keys: "
        "optimized_lyrics, suno_style, suno_title, recommendations_applied (list)."
    )

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        song = input.get("song_concept") or {}
        if not song.get("lyrics"):
            raise self.fail("Song concept has no lyrics")

        await ctx.progress(10, "Optimizing lyrics for Suno...")
        raw = await self.ask(
            ctx,
            f"Optimize this song for Suno.\nTitle: {song.get('song_title')}\n"
            f"Genre: {song.get('genre')}\nMood: {song.get('mood')}\n"
            f"Lyrics:\n{song['lyrics']}",
        )
        result = {
            "optimized_lyrics": raw.get("optimized_lyrics") or song["lyrics"],
            "suno_style": raw.get("suno_style") or f"{song.get('genre', 'pop')}, {song.get('mood', '')}".strip(", "),
            "suno_title": raw.get("suno_title") or song.get("song_title") or "Untitled",
            "recommendations_applied": raw.get("recommendations_applied") or [],
        }

        task_id = await self.tasks.submit_music(
            result["optimized_lyrics"],
            title=result["suno_title"],
            style=result["suno_style"],
            lyrics=result["optimized_lyrics"],
        )
        job = await ctx.create_job("suno", task_id, {"title": result["suno_title"], "style": result["suno_style"]})
        await ctx.progress(30, "Suno task submitted")

        if ctx.wait_mode == "submit":
            return pending_result(task_id, versions=[], **result)

        await ctx.thinking("Waiting for Suno to generate versions...")
        outcome = await self.await_task(ctx, job, MUSIC, task_id)
        versions = outcome.get("versions") or [
            {"clip_id": None, "audio_url": url, "duration": None, "title": result["suno_title"]}
            for url in outcome.get("urls") or []
        ]
        await ctx.progress(90, f"{len(versions)} versions generated")
        return {**result, "versions": versions, "task_id": task_id, "status": "completed"}


class SongSelectorAgent(Agent):
    """Picks the strongest generated version."""

    step = StepId.SONG_SELECTOR
    system_prompt = (
        "You are an A&R executive. Score each song version on concept alignment, "
        "technical quality, hook potential and production consistency. Respond "
        "with a JSON object with keys: selected_index, evaluation, reasoning."
    )

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        suno_result = input.get("suno_result") or {}
        versions = [v for v in suno_result.get("versions") or [] if isinstance(v, dict) and v.get("audio_url")]
        if not versions:
            raise self.fail("No generated song versions to choose from")

        if len(versions) == 1:
            await ctx.info("Only one version available; selecting it")
            selected_index = 0
            evaluation = {"version_0": {"total_score": 100, "strengths": ["Only available version"]}}
            reasoning = "Only one version was generated"
        else:
            song = input.get("song_concept") or {}
            await ctx.progress(30, f"Evaluating {len(versions)} versions...")
            raw = await self.ask(
                ctx,
                f"Song concept: {json.dumps({k: song.get(k) for k in ('song_title', 'hook', 'mood', 'genre')})}\n"
                f"Versions: {json.dumps(versions)}",
                temperature=0.3,
            )
            try:
                selected_index = int(raw.get("selected_index", 0))
            except (TypeError, ValueError):
                selected_index = 0
            if not 0 <= selected_index < len(versions):
                logger.warning(f"Model picked out-of-range version {selected_index}; using 0")
                selected_index = 0
            evaluation = raw.get("evaluation") if isinstance(raw.get("evaluation"), dict) else {}
            reasoning = raw.get("reasoning", "")

        chosen = versions[selected_index]
        await ctx.progress(90, f"Selected version {selected_index}")
        return {
            "selected_index": selected_index,
            "selected_audio_url": chosen["audio_url"],
            "selected_clip_id": chosen.get("clip_id"),
            "selected_duration": chosen.get("duration"),
            "evaluation": evaluation,
            "reasoning": reasoning,
        }


class VisualDesignerAgent(SubmittingAgent):
    """Designs and generates the key visual for the music video."""

    step = StepId.VISUAL_DESIGNER
    system_prompt = (
        "You are a music video art director. Respond with a JSON object with keys: "
        "visual_concept, image_prompt, color_palette (list)."
    )

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        await ctx.progress(10, "Designing key visual...")
        raw = await self.ask(
            ctx,
            f"Song: {input.get('song_title')}\nHook: {input.get('hook')}\n"
            f"Mood: {input.get('mood')}\nGenre: {input.get('genre')}\n"
            f"Platform: {input.get('platform', 'youtube')}",
        )
        image_prompt = raw.get("image_prompt")
        if not image_prompt:
            raise self.fail("Model returned no image prompt")

        aspect_ratio = "9:16" if input.get("platform") in ("tiktok", "instagram") else "16:9"
        task_id = await self.tasks.submit_image(image_prompt, aspect_ratio=aspect_ratio)
        asset = await ctx.create_asset("image", task_id, {"role": "key_visual"})
        await ctx.progress(40, "Image task submitted")

        result = {
            "visual_concept": raw.get("visual_concept", ""),
            "image_prompt": image_prompt,
            "color_palette": raw.get("color_palette") or [],
            "aspect_ratio": aspect_ratio,
            "audio_url": input.get("selected_audio_url"),
        }
        if ctx.wait_mode == "submit":
            return pending_result(task_id, image_url=None, **result)

        outcome = await self.await_task(ctx, asset, IMAGE, task_id)
        await ctx.progress(90, "Key visual ready")
        return {**result, "image_url": outcome.get("url"), "task_id": task_id, "status": "completed"}
