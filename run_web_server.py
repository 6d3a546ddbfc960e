#!/usr/bin/env python3
"""Standalone web server without the visit event drain loop"""
if __name__ == "__main__":
    import uvicorn
    from linkearn.config import Server, LOGGER_CONFIG_JSON
    uvicorn.run("linkearn.server:instance", host=Server.BIND_ADDRESS, port=Server.PORT,
                log_config=LOGGER_CONFIG_JSON, reload=False)
