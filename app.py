import os

import uvicorn
from dotenv import load_dotenv

from composer.logging_setup import setup_logging
from composer.web import create_app

load_dotenv()
setup_logging()

# Raises ConfigurationError before serving anything when GEMINI_API_KEY is missing.
app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
