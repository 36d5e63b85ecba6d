"""
CareLine Alerting Server — Entry Point
"""
import platform
import uvicorn

from careline import settings

if __name__ == "__main__":
    if platform.system() == "Windows":
        uvicorn.run("careline.app:app", host="0.0.0.0", port=settings.PORT, log_level="info", loop="asyncio")
    else:
        uvicorn.run("careline.app:app", host="0.0.0.0", port=settings.PORT, log_level="info")
