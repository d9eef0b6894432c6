import json
import os

import azure.functions as func


def cors_headers():
    origin = os.getenv("ALLOWED_ORIGIN") or "*"
    headers = {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
    }
    # browsers refuse credentials with a wildcard origin
    if origin != "*":
        headers["Access-Control-Allow-Credentials"] = "true"
        headers["Vary"] = "Origin"
    return headers


def respond(body=None, status=200):
    return func.HttpResponse(
        json.dumps(body, ensure_ascii=False) if body is not None else "",
        status_code=status,
        mimetype="application/json",
        headers=cors_headers(),
    )


def error(message, status=400, **extra):
    return respond({"error": message, **extra}, status=status)


def options_response():
    return func.HttpResponse("", status_code=204, headers=cors_headers())
