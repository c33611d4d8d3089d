#!/usr/bin/env python3
"""
Smoke test against a live generation backend.
Probes health, generates a short story preview and prints the scenes.
Set STORY_API_BASE_URL (or a .env file) to point at the backend.
"""
import asyncio
import sys
import os

# Add the client package to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'story_studio_client'))

from story_studio import GenerationSettings, StoryClientConfig, WorkflowState, create_workflow
from story_studio.errors import StoryClientError

async def check_backend():
    config = StoryClientConfig.from_env()
    workflow = create_workflow(config)
    workflow.add_task_listener(lambda task: print(f"   ⏳ {task.status.value} {task.progress:.0f}% {task.current_step}"))

    print(f"🧪 Checking backend at {config.base_url}...")
    try:
        await workflow.check_connectivity()
        print("✅ Backend is responding")
    except StoryClientError as e:
        print(f"❌ {e}")
        return False

    settings = GenerationSettings(
        story_idea="A girl finds a secret door in her grandmother's attic",
        num_scenes=3,
        art_style=config.default_art_style,
    )
    print(f"\n📝 Generating: {settings.story_idea}")
    try:
        await workflow.submit_story(settings)
        if workflow.state == WorkflowState.POLLING_GENERATION:
            await workflow.wait()
    except StoryClientError as e:
        print(f"❌ {e}")
        return False

    story = workflow.preview_story
    print(f"✅ Got '{story.title}' with {len(story.scenes)} scenes (id from {story.id_source})")
    for scene in story.scenes:
        print(f"📖 {scene.title}: {scene.text[:100]}...")
    return True

if __name__ == "__main__":
    success = asyncio.run(check_backend())
    if success:
        print("\n✅ BACKEND OK")
    else:
        print("\n💥 BACKEND CHECK FAILED")
    sys.exit(0 if success else 1)
