from typing import Any

from fastapi.encoders import jsonable_encoder


def api_response(data: Any = None, message: str = "Success") -> dict:
    return {"success": True, "message": message, "data": jsonable_encoder(data)}
