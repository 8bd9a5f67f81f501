"""Agents for the video pipeline.

theme_director -> music_composer -> visual_director -> image_generator ->
video_composer. Each normalizes the model's JSON so downstream steps can rely
on the fields they bind to.
"""

import asyncio
import json
import logging
from typing import Any

from reelpipe.agents.base import Agent, AgentContext, SubmittingAgent, pending_result
from reelpipe.orchestrator.registry import StepId
from reelpipe.services.providers.base import IMAGE, MUSIC

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


class ThemeDirectorAgent(Agent):
    step = StepId.THEME_DIRECTOR
    system_prompt = (
        "You are a creative director for short-form video. Turn a theme into a "
        "concept. Respond with a JSON object with keys: title, description, mood, "
        "style, target_audience, keywords (list), color_palette (list of hex colors)."
    )

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        theme = input["theme"]
        duration = input.get("duration", 60)
        platform = input.get("platform", "youtube")

        await ctx.info(f"Analyzing theme: {theme}")
        await ctx.progress(20, "Generating concept...")
        raw = await self.ask(
            ctx,
            f"Theme: {theme}\nPlatform: {platform}\nDuration: {duration} seconds\n\n"
            "Generate a creative concept that works for this platform and duration.",
        )
        await ctx.progress(80, "Concept generated")

        return {
            "title": raw.get("title") or theme,
            "description": raw.get("description", ""),
            "mood": raw.get("mood", "neutral"),
            "style": raw.get("style", "cinematic"),
            "target_audience": raw.get("target_audience", "general"),
            "keywords": _as_list(raw.get("keywords")),
            "color_palette": _as_list(raw.get("color_palette")) or ["#000000", "#FFFFFF"],
            "duration": duration,
            "original_theme": theme,
        }


class MusicComposerAgent(SubmittingAgent):
    step = StepId.MUSIC_COMPOSER
    system_prompt = (
        "You are a music producer. Respond with a JSON object with keys: title, "
        "genre, bpm, lyrics, lyrics_segments (list), suno_prompt."
    )

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        theme_concept = input.get("theme_concept") or {}
        duration = input.get("duration", 60)

        await ctx.info(f"Starting music composition for: {theme_concept.get('title', 'Untitled')}")
        await ctx.progress(10, "Analyzing theme concept...")
        concept = await self.ask(
            ctx,
            f"Create a music concept for a {duration}-second song.\n"
            f"Title: {theme_concept.get('title', 'Untitled')}\n"
            f"Mood: {theme_concept.get('mood', 'neutral')}\n"
            f"Visual style: {theme_concept.get('style', 'cinematic')}\n"
            f"Keywords: {', '.join(theme_concept.get('keywords') or [])}",
        )
        await ctx.progress(30, "Music concept created")

        result = {
            "title": concept.get("title") or "Generated Song",
            "genre": concept.get("genre") or "pop",
            "bpm": concept.get("bpm") or 120,
            "lyrics": concept.get("lyrics", ""),
            "lyrics_segments": _as_list(concept.get("lyrics_segments")),
            "suno_prompt": concept.get("suno_prompt", ""),
        }

        task_id = await self.tasks.submit_music(
            result["suno_prompt"] or result["title"],
            title=result["title"],
            style=result["genre"],
            lyrics=result["lyrics"] or None,
        )
        asset = await ctx.create_asset("music", task_id, {"title": result["title"], "genre": result["genre"]})
        await ctx.progress(40, "Music task submitted")

        if ctx.wait_mode == "submit":
            return pending_result(task_id, audio_url=None, **result)

        await ctx.thinking("Waiting for music generation...")
        outcome = await self.await_task(ctx, asset, MUSIC, task_id)
        await ctx.progress(90, "Music generation completed")
        return {**result, "audio_url": outcome.get("url"), "task_id": task_id, "status": "completed"}


class VisualDirectorAgent(Agent):
    step = StepId.VISUAL_DIRECTOR
    system_prompt = (
        "You are a visual director. Break a video into scenes. Respond with a JSON "
        "object with keys: scenes (list of {number, section, description, "
        "image_prompt, duration}) and style_guide ({art_style, color_palette, "
        "character_consistency, lighting})."
    )

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        theme_concept = input.get("theme_concept") or {}
        music_concept = input.get("music_concept") or {}
        duration = input.get("duration", 60)

        await ctx.progress(10, "Planning scenes...")
        raw = await self.ask(
            ctx,
            f"Plan the scenes for a {duration}-second video.\n"
            f"Concept: {json.dumps(theme_concept)}\n"
            f"Lyrics segments: {json.dumps(music_concept.get('lyrics_segments') or [])}",
        )

        scenes = []
        for index, scene in enumerate(_as_list(raw.get("scenes")), start=1):
            if not isinstance(scene, dict):
                continue
            scenes.append({
                "number": scene.get("number", index),
                "section": scene.get("section", ""),
                "description": scene.get("description", ""),
                "image_prompt": scene.get("image_prompt") or scene.get("description", ""),
                "duration": scene.get("duration") or round(duration / max(len(raw["scenes"]), 1), 2),
            })
        if not scenes:
            raise self.fail("Model returned no scenes")

        guide = raw.get("style_guide") if isinstance(raw.get("style_guide"), dict) else {}
        style_guide = {
            "art_style": guide.get("art_style") or theme_concept.get("style", "cinematic"),
            "color_palette": guide.get("color_palette") or theme_concept.get("color_palette", []),
            "character_consistency": guide.get("character_consistency")
            or "Maintain consistent character appearance across all scenes",
            "lighting": guide.get("lighting") or "Consistent lighting matching the mood",
            "aspect_ratio": "16:9",
        }
        await ctx.progress(90, f"{len(scenes)} scenes planned")
        return {"scenes": scenes, "style_guide": style_guide, "total_scenes": len(scenes)}


class ImageGeneratorAgent(SubmittingAgent):
    """One image task per scene, submitted and awaited concurrently."""

    step = StepId.IMAGE_GENERATOR

    @staticmethod
    def build_prompt(scene: dict, style_guide: dict) -> str:
        base = scene.get("image_prompt") or scene.get("description", "")
        parts = [base]
        if style_guide.get("art_style"):
            parts.append(f"Style: {style_guide['art_style']}")
        if style_guide.get("color_palette"):
            parts.append(f"Colors: {', '.join(style_guide['color_palette'])}")
        if style_guide.get("lighting"):
            parts.append(style_guide["lighting"])
        return ". ".join(p for p in parts if p)

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        scenes = [s for s in _as_list(input.get("scenes")) if isinstance(s, dict)]
        style_guide = input.get("style_guide") or {}
        if not scenes:
            raise self.fail("No scenes to illustrate")

        aspect_ratio = style_guide.get("aspect_ratio", "16:9")
        await ctx.info(f"Generating {len(scenes)} images")
        submissions = await asyncio.gather(
            *(
                self.tasks.submit_image(self.build_prompt(scene, style_guide), aspect_ratio=aspect_ratio)
                for scene in scenes
            ),
            return_exceptions=True,
        )

        submitted = []
        failures = []
        for scene, outcome in zip(scenes, submissions):
            if isinstance(outcome, Exception):
                logger.warning(f"Image submission failed for scene {scene.get('number')}: {outcome}")
                failures.append({"scene": scene.get("number"), "error": str(outcome)})
                continue
            asset = await ctx.create_asset("image", outcome, {"scene": scene.get("number")})
            submitted.append((scene, asset, outcome))
        if not submitted:
            raise self.fail(f"All {len(scenes)} image submissions failed")
        await ctx.progress(30, f"{len(submitted)} image tasks submitted")

        if ctx.wait_mode == "submit":
            images = [
                {"scene": scene.get("number"), "url": None, "task_id": task_id, "status": "pending"}
                for scene, _, task_id in submitted
            ]
            return {"images": images, "total_generated": 0, "total_failed": len(failures),
                    "failures": failures, "status": "pending"}

        payloads = await asyncio.gather(*(self.poll(IMAGE, task_id) for _, _, task_id in submitted))

        images = []
        for (scene, asset, task_id), payload in zip(submitted, payloads):
            outcome = await self.settle(ctx, asset, payload)
            if outcome.get("status") == "completed" and outcome.get("url"):
                images.append({"scene": scene.get("number"), "url": outcome["url"], "task_id": task_id})
            else:
                failures.append({"scene": scene.get("number"), "error": outcome.get("error")})
        if not images:
            raise self.fail(f"No images generated ({len(failures)} failed)")

        await ctx.progress(90, f"{len(images)} of {len(scenes)} images ready")
        return {
            "images": images,
            "total_generated": len(images),
            "total_failed": len(failures),
            "failures": failures,
        }


class VideoComposerAgent(Agent):
    """Plans the final cut. Rendering is left to the media service."""

    step = StepId.VIDEO_COMPOSER
    system_prompt = (
        "You are a video editor. Respond with a JSON object with key composition: a "
        "list of {scene, duration, transition_in, transition_out, "
        "transition_duration, ken_burns: {zoom, direction}}."
    )

    @staticmethod
    def normalize_ken_burns(value: Any) -> dict:
        if not isinstance(value, dict):
            return {"zoom": 1.05, "direction": "up"}
        zoom = value.get("zoom", 1.05)
        try:
            zoom = min(max(float(zoom), 1.0), 1.3)
        except (TypeError, ValueError):
            zoom = 1.05
        return {"zoom": zoom, "direction": value.get("direction", "up")}

    async def execute(self, input: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        images = [i for i in _as_list(input.get("images")) if isinstance(i, dict) and i.get("url")]
        scenes = _as_list(input.get("scenes"))
        duration = input.get("duration", 60)
        if not images:
            raise self.fail("No generated images to compose")

        await ctx.progress(20, "Planning composition...")
        scene_info = [
            {"number": s.get("number"), "section": s.get("section"), "duration": s.get("duration")}
            for s in scenes if isinstance(s, dict)
        ]
        raw = await self.ask(
            ctx,
            f"Create composition instructions for {len(images)} images, total duration "
            f"{duration} seconds.\nScenes: {json.dumps(scene_info)}",
        )

        planned = [c for c in _as_list(raw.get("composition")) if isinstance(c, dict)]
        per_image = round(duration / len(images), 2)
        composition = []
        for index, image in enumerate(images):
            item = planned[index] if index < len(planned) else {}
            composition.append({
                "scene": item.get("scene", image.get("scene", index + 1)),
                "image_url": image["url"],
                "duration": item.get("duration") or per_image,
                "transition_in": item.get("transition_in", "fade"),
                "transition_out": item.get("transition_out", "fade"),
                "transition_duration": item.get("transition_duration", 0.5),
                "ken_burns": self.normalize_ken_burns(item.get("ken_burns")),
            })

        await ctx.progress(90, "Composition ready")
        return {
            "composition": composition,
            "music_url": input.get("music_url"),
            "total_duration": duration,
            "platform": input.get("platform", "youtube"),
        }
