import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse, Response

# Local development keeps credentials in .env.local; real env vars win.
load_dotenv(".env.local")
load_dotenv()

from . import services  # noqa: E402
from .clients import GeminiImageGenerator, GeminiMenuParser  # noqa: E402
from .imaging import InvalidImageError, decode_base64_image, prepare_menu_image  # noqa: E402
from .observability import AnalysisError, ApiKeyMissingError, GenerationError  # noqa: E402
from .schemas import GenerateImageRequest, GenerateImageResponse, MenuAnalysisResponse, ParseMenuRequest  # noqa: E402
from .sessions_api import router as sessions_router  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    if services._registry is not None:
        services._registry.close_all()


app = FastAPI(title="GourmetVision API", version="1.0.0", lifespan=_lifespan)
app.include_router(sessions_router)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/assets/gen/{key:path}")
def get_generated_asset(key: str) -> Response:
    entry = services.get_image_store().get(f"gen/{key}")
    if entry is None:
        return Response(status_code=404)
    data, content_type = entry
    return Response(content=data, media_type=content_type)


# -----------------------------------------------------------------------------
# POST /api/parse-menu
# -----------------------------------------------------------------------------
@app.post("/api/parse-menu", response_model=MenuAnalysisResponse, response_model_exclude_none=True)
async def parse_menu(req: ParseMenuRequest):
    """Proxy a menu photo to the analysis model; the browser never sees the key."""
    if not services.get_api_key():
        return _error(500, "API key not configured")
    if not req.base64_image:
        return _error(400, "base64Image is required")

    try:
        image_bytes, mime_type = decode_base64_image(req.base64_image)
        image_bytes, mime_type = prepare_menu_image(image_bytes, mime_type)
    except InvalidImageError as e:
        logger.warning("Rejected menu image: %s", e)
        return _error(400, "base64Image is not a readable image")

    try:
        parser = GeminiMenuParser(services.get_gemini_client())
        dishes = await parser.parse(image_bytes, mime_type)
    except ApiKeyMissingError:
        return _error(500, "API key not configured")
    except AnalysisError:
        logger.exception("Error parsing menu")
        return _error(500, "Failed to parse menu")

    return MenuAnalysisResponse(dishes=dishes)


# -----------------------------------------------------------------------------
# POST /api/generate-image
# -----------------------------------------------------------------------------
@app.post("/api/generate-image", response_model=GenerateImageResponse)
async def generate_image(req: GenerateImageRequest):
    """Proxy one dish photo request to the image model."""
    if not services.get_api_key():
        return _error(500, "API key not configured")

    dish_name = (req.dish_name or "").strip()
    description = (req.description or "").strip()
    if not dish_name or not description:
        return _error(400, "dishName and description are required")

    try:
        generator = GeminiImageGenerator(services.get_gemini_client(), style=req.style)
        image_url = await generator.generate(dish_name, description)
    except ApiKeyMissingError:
        return _error(500, "API key not configured")
    except GenerationError:
        logger.exception("Error generating image")
        return _error(500, "Failed to generate image")

    return GenerateImageResponse(image_url=image_url)
