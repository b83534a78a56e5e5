import logging
import os

import uvicorn

if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("REVIEW_ENGINE_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("REVIEW_ENGINE_PORT", "8000"))

    print("Starting Assessment Review API Server...")
    print(f"Docs available at: http://localhost:{port}/docs")

    uvicorn.run(
        "review_engine.api.server:app",
        host=os.environ.get("REVIEW_ENGINE_HOST", "0.0.0.0"),
        port=port,
        reload=os.environ.get("REVIEW_ENGINE_RELOAD", "") == "1"
    )
