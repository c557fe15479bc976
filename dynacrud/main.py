import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dynacrud.api.router import api_router
from dynacrud.core.database import engine

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


# Release pooled connections once the app shuts down
@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    engine.dispose()


app = FastAPI(title="DynaCRUD Entity API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the DynaCRUD entity API"}
