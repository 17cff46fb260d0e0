import asyncio
import sys
import os

# Ensure carebot is in path
sys.path.append(os.getcwd())

from carebot.database import AsyncSessionLocal, init_models
from carebot.dependencies import get_classifier, get_domain_client, get_mailer
from carebot.services.flow_dispatcher import FlowDispatcher

async def simulate_chat():
    print("--- 💊 CareBot Simulator 💊 ---")
    print("Type your message and press Enter. Type 'quit' to exit.")
    print("Send a prescription with: /media <url> <content-type> [caption]")

    phone_number = os.environ.get("SIMULATOR_PHONE", "+2348000000000")
    print(f"Simulating user: {phone_number}")

    await init_models()

    while True:
        user_input = input(f"You ({phone_number}): ")
        if user_input.lower() in ['quit', 'exit']:
            break

        # A fresh DB session per message, like the webhook
        async with AsyncSessionLocal() as db:
            dispatcher = FlowDispatcher(db, get_domain_client(), get_mailer(), get_classifier())
            if user_input.startswith("/media "):
                parts = user_input.split(maxsplit=3)
                url = parts[1] if len(parts) > 1 else ""
                content_type = parts[2] if len(parts) > 2 else "image/jpeg"
                caption = parts[3] if len(parts) > 3 else ""
                replies = await dispatcher.handle_media(f"whatsapp:{phone_number}", url, content_type, caption)
            else:
                replies = await dispatcher.handle_message(f"whatsapp:{phone_number}", user_input)

        for reply in replies:
            print(f"Bot: {reply}\n")

if __name__ == "__main__":
    try:
        asyncio.run(simulate_chat())
    except KeyboardInterrupt:
        print("\nExiting simulator.")
