"""
Demo: a streamed chat session with one local function.

Needs OPENAI_API_KEY (or GEMINI_API_KEY with a gemini-* model) in the
environment or a .env file.
"""
import asyncio
import sys

from langxlang import Arg, ChatSession, CompletionService, FunctionSpec, RichPrinter, RichStreamPrinter


def get_weather(location: str, unit: str = "celsius") -> dict:
    """Mock weather lookup."""
    temps = {"Paris": 18, "London": 14, "Tokyo": 22}
    temp = temps.get(location, 15)
    if unit == "fahrenheit":
        temp = int(temp * 9 / 5 + 32)
    return {"location": location, "temperature": temp, "unit": unit}


async def main(model: str):
    service = CompletionService()
    session = ChatSession(
        service,
        None,
        model,
        "You are a concise assistant who talks like a pirate.",
        functions=[
            FunctionSpec(get_weather, "Get the current weather for a city", [
                Arg("location", str, "City name, e.g. Paris"),
                Arg("unit", ["celsius", "fahrenheit"], "Temperature unit"),
            ]),
        ],
    )

    result = await session.send_message("What's the weather like in Paris?", RichStreamPrinter(title=model))
    RichPrinter(title="Result").print_result(result)
    await service.close()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "gpt-4o-mini"))
