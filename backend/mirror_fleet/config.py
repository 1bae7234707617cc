import os

DATABASE_URL = os.getenv("MIRROR_FLEET_DATABASE_URL", "sqlite:///./mirror_fleet.db")
LOG_LEVEL = os.getenv("MIRROR_FLEET_LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("MIRROR_FLEET_LOG_JSON", "0") == "1"
_token_ttl_raw = os.getenv("MIRROR_FLEET_TOKEN_TTL_HOURS", "8").strip()
TOKEN_TTL_HOURS = int(_token_ttl_raw) if _token_ttl_raw else 8
CORS_ORIGINS = [o.strip() for o in os.getenv("MIRROR_FLEET_CORS_ORIGINS", "*").split(",") if o.strip()]

# 归还时没有原负责人记录的兜底值
DEFAULT_OWNER = "公司"
# 打印机实例归还且没有原位置时的默认存放点
DEFAULT_INSTANCE_LOCATION = "展厅/调试间"
DEFAULT_INVENTORY_LOCATION = "杭州调试间"

PAPER_LOW_THRESHOLD = 100
INK_LOW_THRESHOLD = 3
