from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "success": True,
            "data": jsonable_encoder(data),
            "error": None,
            "message": message,
        }
    )


def error_response(error, status=400, message=None, data=None):
    return JSONResponse(
        status_code=status,
        content={
            "success": False,
            "data": jsonable_encoder(data),
            "error": error,
            "message": message or error,
        }
    )
