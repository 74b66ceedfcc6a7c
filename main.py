# main.py
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from helpers.tortoise_config import lifespan

# ----- Routers / controllers -----
from controllers import (
    call_controller,
    conversation_controller,
    message_controller,
    twilio_webhooks,
)

app = FastAPI(lifespan=lifespan)

# ----- Middlewares -----
app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----- Routers -----
app.include_router(call_controller.router, prefix="/api", tags=["Call Controller"])
app.include_router(message_controller.router, prefix="/api", tags=["Message Controller"])
app.include_router(conversation_controller.router, prefix="/api", tags=["Conversation Controller"])
app.include_router(twilio_webhooks.router, prefix="/api", tags=["Twilio Webhooks"])


# ----- Root -----
@app.get("/")
def greetings():
    return {"Message": "Communication pipeline is running"}
