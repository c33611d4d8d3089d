"""In-process stand-in for the generation backend, served through httpx.ASGITransport."""
import asyncio
import base64
import io
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from PIL import Image


def png_base64(color=(255, 0, 0)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (2, 2), color).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode()


def create_app(state: Dict[str, Any]) -> FastAPI:
    app = FastAPI(title="Fake Story Backend")
    calls: List[tuple] = state.setdefault("calls", [])

    @app.get("/")
    async def health():
        calls.append(("GET", "/", None))
        return {"status": "ok"}

    @app.post("/api/stories/generate")
    async def generate(request: Request):
        body = await request.json()
        calls.append(("POST", "/api/stories/generate", body))
        state.setdefault("generate_headers", []).append(dict(request.headers))
        if state.get("generate_delay"):
            await asyncio.sleep(state["generate_delay"])
        if state.get("generate_error"):
            raise HTTPException(state["generate_error"], "generation backend exploded")
        if state.get("async_generate"):
            return {"taskId": "gen-task", "status": "pending", "estimatedTime": 30}
        return state.get("story_response") or {
            "title": "The Door",
            "scene_1": "A girl finds a door.",
            "scene_2": "She opens it.",
            "scene_3": "A forest waits.",
        }

    @app.get("/api/stories/status/{task_id}")
    async def status(task_id: str):
        calls.append(("GET", f"/api/stories/status/{task_id}", None))
        sequence = state["status_sequence"]
        return sequence.pop(0) if len(sequence) > 1 else sequence[0]

    @app.post("/api/stories/refine")
    async def refine(request: Request):
        body = await request.json()
        calls.append(("POST", "/api/stories/refine", body))
        if state.get("refine_delay"):
            await asyncio.sleep(state["refine_delay"])
        if state.get("refine_error"):
            raise HTTPException(state["refine_error"], "refinement unavailable")
        return state.get("refine_response") or {"refined_story": "A happier ending for everyone."}

    @app.post("/api/stories/get_scenes")
    async def get_scenes(request: Request):
        body = await request.json()
        calls.append(("POST", "/api/stories/get_scenes", body))
        if state.get("async_assets"):
            return {"taskId": "asset-task", "status": "queued"}
        scenes = body["story"]["scenes"]
        response = {
            f"scene_{i + 1}": {"PIL": png_base64(), "Text": scene["text"]}
            for i, scene in enumerate(scenes)
        }
        response["pdfUrl"] = "https://cdn.example/story.pdf"
        return response

    @app.put("/api/stories/{story_id}/scenes/{scene_id}")
    async def update_scene(story_id: str, scene_id: int, request: Request):
        body = await request.json()
        calls.append(("PUT", f"/api/stories/{story_id}/scenes/{scene_id}", body))
        if state.get("update_error"):
            raise HTTPException(state["update_error"], "scene store offline")
        return {"scene": {**body, "id": scene_id}, "message": "Scene updated successfully"}

    @app.post("/api/stories/regenerate_image")
    async def regenerate_image(request: Request):
        body = await request.json()
        calls.append(("POST", "/api/stories/regenerate_image", body))
        return {"imageUrl": f"https://cdn.example/{body['storyId']}/{body['sceneId']}.png"}

    @app.post("/api/stories/{story_id}/share")
    async def share(story_id: str):
        calls.append(("POST", f"/api/stories/{story_id}/share", None))
        return {
            "shareUrl": f"https://stories.example/shared/{story_id}",
            "shareId": story_id,
            "expiresAt": "2030-01-01T00:00:00Z",
        }

    return app
