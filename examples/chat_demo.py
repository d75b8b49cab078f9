"""Minimal demonstration of a chat turn through the adapter service."""

import asyncio

from chat_adapter import ToolContext, get_default_service


async def main():
    service = get_default_service()
    created = await service.create_conversation({"metadata": {"title": "demo", "tags": ["demo"]}})
    conversation_id = created.rsplit(":", 1)[-1].strip()
    print(created)

    question = "用一句话介绍一下你自己"
    ctx = ToolContext(report_progress=lambda event: print(f"  progress {event['progress']}/{event['total']}"))
    reply = await service.chat({"conversation_id": conversation_id, "message": question}, ctx)
    print("User:", question)
    print("Assistant:", reply)

    for meta in await service.list_conversations({"filter": {"tags": ["demo"]}, "limit": 5}):
        print(meta.id, meta.title, meta.message_count)


if __name__ == "__main__":
    asyncio.run(main())
