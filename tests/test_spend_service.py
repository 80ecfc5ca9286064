"""
消费数据服务单元测试

覆盖范围：
  - 配置模块（服务发现、环境变量解析）
  - 数据处理层（汇总、时间过滤）
  - 消费分析层（月度 / 商家 / 时段分布）
  - 持久化缓存编解码、缓存键生成、文件后备存储
  - API 响应模型
  - FastAPI 路由（通过 TestClient 测试，不需要真实数据库）
"""

import asyncio
import json
import math
import os
import random
import sys
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


# ─────────────────────────────────────────────────────────
# 辅助函数：生成示例规范化记录
# ─────────────────────────────────────────────────────────

def _record(rid, amount, name="Cafe", area="HSR", ts=None, fees=0.0, tip=0.0):
    from spend_service.models.records import CanonicalRecord
    from spend_service.sources.fields import SOURCE_TZ, derive_temporal

    ts = ts or datetime(2024, 3, 5, 20, 15, tzinfo=SOURCE_TZ)
    return CanonicalRecord(
        id=str(rid),
        source_id="swiggy",
        **derive_temporal(ts),
        gross_amount=amount,
        net_amount=amount,
        fees_total=fees,
        tip_amount=tip,
        counterparty_name=name,
        counterparty_area=area,
    )


def _sample_records(n: int = 30) -> list:
    from spend_service.sources.fields import SOURCE_TZ

    start = datetime(2024, 1, 1, 8, 0, tzinfo=SOURCE_TZ)
    names = ["Meghana Foods", "Truffles", "Empire", "Toit"]
    return [
        _record(
            i,
            round(random.uniform(100, 2000), 2),
            name=random.choice(names),
            area=random.choice(["HSR", "Koramangala"]),
            ts=start + timedelta(days=3 * i, hours=i % 12),
            fees=round(random.uniform(0, 80), 2),
            tip=random.choice([0.0, 20.0, 30.0]),
        )
        for i in range(n)
    ]


def _swiggy_raw() -> list:
    return [
        {
            "order_id": "1001",
            "order_time": "2024-03-05 20:15:00",
            "order_status": "COMPLETED",
            "order_total": "1,250.50",
            "restaurant_name": "Meghana Foods",
            "restaurant_locality": "Koramangala",
        },
        {
            "order_id": "1002",
            "order_time": "2024-03-06 13:00:00",
            "order_status": "CANCELLED",
            "order_total": "300",
        },
    ]


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        """默认配置不依赖外部服务即可实例化"""
        from spend_service.config import SpendServiceSettings
        s = SpendServiceSettings()
        assert s.PORT == 8001
        assert s.MONGODB_DATABASE == "spenddy"
        assert s.REFRESH_INTERVAL_SECONDS == 30
        assert s.EVICTION_INTERVAL_SECONDS == 300
        assert s.IDLE_EVICTION_SECONDS == 600
        assert s.TZ == "Asia/Kolkata"

    def test_env_override(self):
        from spend_service.config import SpendServiceSettings
        with patch.dict(os.environ, {"IDLE_EVICTION_SECONDS": "120", "CACHE_DIR": "/tmp/x"}):
            s = SpendServiceSettings()
        assert s.IDLE_EVICTION_SECONDS == 120
        assert s.CACHE_DIR == "/tmp/x"

    def test_mongo_uri_no_auth(self):
        from spend_service.config import SpendServiceSettings
        s = SpendServiceSettings(MONGODB_USERNAME="", MONGODB_PASSWORD="")
        assert s.MONGO_URI.startswith("mongodb://")
        assert "@" not in s.MONGO_URI

    def test_mongo_uri_with_auth(self):
        from spend_service.config import SpendServiceSettings
        s = SpendServiceSettings(
            MONGODB_USERNAME="user",
            MONGODB_PASSWORD="pass",
            MONGODB_HOST="db-host",
            MONGODB_PORT=27017,
            MONGODB_DATABASE="mydb",
            MONGODB_AUTH_SOURCE="admin",
        )
        assert "user:pass@db-host:27017/mydb" in s.MONGO_URI

    def test_redis_url_with_auth(self):
        from spend_service.config import SpendServiceSettings
        s = SpendServiceSettings(REDIS_PASSWORD="secret", REDIS_HOST="cache", REDIS_PORT=6379)
        assert ":secret@cache:6379" in s.REDIS_URL

    def test_docker_service_discovery(self):
        """Docker 环境下默认使用服务名而非 localhost"""
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from spend_service import config as cfg_module
            assert cfg_module._default_mongo_host() == "mongodb"
            assert cfg_module._default_redis_host() == "redis"


# ─────────────────────────────────────────────────────────
# 2. 数据处理层测试
# ─────────────────────────────────────────────────────────

class TestProcessingLayer:
    def setup_method(self):
        from spend_service.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_aggregate_empty(self):
        agg = self.proc.aggregate([])
        assert agg.record_count == 0
        assert agg.total_amount == 0
        assert agg.average_amount == 0
        assert agg.time_span is None
        assert agg.records == ()

    def test_average_times_count(self):
        records = _sample_records(40)
        agg = self.proc.aggregate(records)
        assert agg.record_count == 40
        assert math.isclose(agg.average_amount * agg.record_count, agg.total_amount, rel_tol=1e-9)

    def test_order_independent(self):
        records = _sample_records(25)
        shuffled = list(records)
        random.shuffle(shuffled)
        a = self.proc.aggregate(records)
        b = self.proc.aggregate(shuffled)
        assert a.total_amount == b.total_amount
        assert a.total_fees == b.total_fees
        assert a.total_tips == b.total_tips
        assert a.distinct_counterparties == b.distinct_counterparties
        assert a.time_span == b.time_span

    def test_distinct_case_sensitive(self):
        records = [
            _record(1, 100, name="Cafe", area="HSR"),
            _record(2, 100, name="cafe", area="HSR"),
            _record(3, 100, name="Cafe", area="hsr"),
        ]
        agg = self.proc.aggregate(records)
        assert agg.distinct_counterparties == 2
        assert agg.distinct_areas == 2

    def test_time_span(self):
        records = _sample_records(10)
        agg = self.proc.aggregate(records)
        assert agg.time_span.earliest == records[0].timestamp
        assert agg.time_span.latest == records[-1].timestamp

    def test_totals(self):
        records = [_record(1, 100, fees=10, tip=5), _record(2, 250.5, fees=2.5)]
        agg = self.proc.aggregate(records)
        assert agg.total_amount == 350.5
        assert agg.total_fees == 12.5
        assert agg.total_tips == 5.0
        assert agg.average_amount == 175.25

    def test_filter_by_time_span_inclusive(self):
        records = _sample_records(30)
        start, end = records[5].timestamp, records[10].timestamp
        filtered = self.proc.filter_by_time_span(records, start, end)
        assert [r.id for r in filtered] == [r.id for r in records[5:11]]

    def test_filter_open_ended(self):
        records = _sample_records(10)
        assert len(self.proc.filter_by_time_span(records, None, None)) == 10
        assert len(self.proc.filter_by_time_span(records, records[7].timestamp, None)) == 3


# ─────────────────────────────────────────────────────────
# 3. 消费分析层测试
# ─────────────────────────────────────────────────────────

class TestAnalysisLayer:
    def setup_method(self):
        from spend_service.layers.analysis import AnalysisLayer
        from spend_service.sources.fields import SOURCE_TZ
        self.analysis = AnalysisLayer()
        self.tz = SOURCE_TZ

    def test_empty_safe(self):
        assert self.analysis.monthly_breakdown([]) == []
        assert self.analysis.top_counterparties([]) == []
        assert self.analysis.hourly_weekday_matrix([]) == []
        assert self.analysis.to_frame([]).empty

    def test_monthly_breakdown(self):
        records = [
            _record(1, 100, ts=datetime(2024, 2, 10, 12, tzinfo=self.tz), fees=10),
            _record(2, 200, ts=datetime(2024, 1, 3, 20, tzinfo=self.tz), tip=20),
            _record(3, 50, ts=datetime(2024, 2, 11, 9, tzinfo=self.tz)),
        ]
        rows = self.analysis.monthly_breakdown(records)
        assert [r["month"] for r in rows] == ["2024-01", "2024-02"]
        assert rows[0] == {
            "month": "2024-01", "total_amount": 200.0, "record_count": 1,
            "total_fees": 0.0, "total_tips": 20.0,
        }
        assert rows[1]["total_amount"] == 150.0
        assert rows[1]["record_count"] == 2
        assert rows[1]["total_fees"] == 10.0

    def test_top_counterparties(self):
        records = [
            _record(1, 100, name="Empire"),
            _record(2, 300, name="Empire"),
            _record(3, 50, name="Truffles"),
            _record(4, 80, name="Anand"),
        ]
        rows = self.analysis.top_counterparties(records, limit=2)
        assert rows[0] == {
            "counterparty": "Empire", "record_count": 2,
            "total_amount": 400.0, "average_amount": 200.0,
        }
        # 同笔数按名称排序
        assert rows[1]["counterparty"] == "Anand"
        assert len(rows) == 2

    def test_hourly_weekday_matrix(self):
        records = [
            _record(1, 100, ts=datetime(2024, 3, 5, 20, tzinfo=self.tz)),   # Tuesday
            _record(2, 100, ts=datetime(2024, 3, 12, 20, tzinfo=self.tz)),  # Tuesday
            _record(3, 100, ts=datetime(2024, 3, 4, 9, tzinfo=self.tz)),    # Monday
        ]
        rows = self.analysis.hourly_weekday_matrix(records)
        assert rows == [
            {"weekday": "Monday", "hour": 9, "count": 1},
            {"weekday": "Tuesday", "hour": 20, "count": 2},
        ]


# ─────────────────────────────────────────────────────────
# 4. 编解码测试
# ─────────────────────────────────────────────────────────

class TestCodec:
    def test_records_round_trip_restores_datetimes(self):
        from spend_service.models.codec import decode_records, encode_records
        records = _sample_records(5)
        blob = json.loads(json.dumps(encode_records(records)))
        assert isinstance(blob[0]["timestamp"], str)

        decoded = decode_records(blob)
        for original, restored in zip(records, decoded):
            assert isinstance(restored.timestamp, datetime)
            assert restored.timestamp == original.timestamp
        assert decoded == records

    def test_extra_fields_preserved(self):
        from spend_service.models.codec import decode_records, encode_records
        from spend_service.sources.swiggy import transform
        records = transform([dict(_swiggy_raw()[0], charges={"GST": "12.5"})])
        decoded = decode_records(json.loads(json.dumps(encode_records(records))))
        assert decoded[0].fee_breakdown["tax"] == 12.5
        assert decoded[0].timestamp == records[0].timestamp

    def test_aggregate_round_trip(self):
        from spend_service.layers.processing import build_aggregate
        from spend_service.models.codec import decode_aggregate, encode_aggregate
        records = tuple(_sample_records(8))
        agg = build_aggregate(records)
        blob = json.loads(json.dumps(encode_aggregate(agg)))
        assert "records" not in blob
        restored = decode_aggregate(blob, records)
        assert restored.time_span.earliest == agg.time_span.earliest
        assert restored.total_amount == agg.total_amount
        assert restored.records == records

    def test_decode_garbage_raises(self):
        from pydantic import ValidationError
        from spend_service.models.codec import decode_aggregate, decode_records
        with pytest.raises(ValidationError):
            decode_records([{"id": "x"}])
        with pytest.raises(TypeError):
            decode_aggregate("nope", ())

    def test_records_differ(self):
        from spend_service.models.codec import records_differ
        a = [_record(1, 100), _record(2, 200)]
        assert not records_differ(a, [_record(1, 100), _record(2, 200)])
        assert records_differ(a, a[:1])
        assert records_differ(a, [_record(1, 100), _record(2, 201)])


# ─────────────────────────────────────────────────────────
# 5. 缓存键与文件后备存储测试
# ─────────────────────────────────────────────────────────

class TestCacheKeys:
    def test_key_format(self):
        from spend_service.layers.cache import NAMESPACE, RECORDS, _make_key
        key = _make_key(NAMESPACE, "swiggy", RECORDS)
        assert key == "dataset:swiggy:records"

    def test_long_key_hashed(self):
        from spend_service.layers.cache import _make_key
        key = _make_key("ns", *(["part"] * 50))
        assert len(key) <= 250

    def test_key_consistency(self):
        from spend_service.layers.cache import _make_key
        assert _make_key("a", "b", "c") == _make_key("a", "b", "c")


class TestFileBackends:
    """未初始化 MongoDB / Redis 时两级存储均走文件后备"""

    def test_durable_set_get_delete(self, tmp_path):
        from spend_service.layers.cache import AGGREGATE, RAW, RECORDS, CacheLayer
        layer = CacheLayer(cache_dir=str(tmp_path))

        async def scenario():
            await layer.set([{"a": 1}], "swiggy", RAW)
            await layer.set({"record_count": 1}, "swiggy", AGGREGATE)
            got = await layer.get("swiggy", RAW)
            await layer.delete("swiggy")
            return got, await layer.get("swiggy", RAW), await layer.get("swiggy", RECORDS)

        got, after_raw, missing = asyncio.run(scenario())
        assert got == [{"a": 1}]
        assert after_raw is None
        assert missing is None

    def test_durable_capacity_limit(self, tmp_path):
        from spend_service.errors import DurableCacheWriteError
        from spend_service.layers.cache import RAW, CacheLayer
        layer = CacheLayer(cache_dir=str(tmp_path), max_bytes=64)
        with pytest.raises(DurableCacheWriteError) as info:
            asyncio.run(layer.set(["x" * 100], "swiggy", RAW))
        assert info.value.key == "dataset:swiggy:raw"
        assert asyncio.run(layer.get("swiggy", RAW)) is None

    def test_durable_corrupt_file_is_miss(self, tmp_path):
        from spend_service.layers.cache import RECORDS, CacheLayer
        (tmp_path / "dataset_swiggy_records.json").write_text("{broken", encoding="utf-8")
        layer = CacheLayer(cache_dir=str(tmp_path))
        assert asyncio.run(layer.get("swiggy", RECORDS)) is None

    def test_capture_directory(self, tmp_path):
        from spend_service.layers.acquisition import AcquisitionLayer
        (tmp_path / "swiggy_raw_data.json").write_text(json.dumps(_swiggy_raw()), encoding="utf-8")
        (tmp_path / "swiggy_dineout_raw_data.json").write_text("not json", encoding="utf-8")
        layer = AcquisitionLayer(capture_dir=str(tmp_path))
        assert len(asyncio.run(layer.get("swiggy_raw_data"))) == 2
        assert asyncio.run(layer.get("swiggy_dineout_raw_data")) is None
        assert asyncio.run(layer.get("swiggy_instamart_raw_data")) is None
        assert asyncio.run(layer.exists("swiggy_raw_data")) is True


# ─────────────────────────────────────────────────────────
# 6. API 响应模型测试
# ─────────────────────────────────────────────────────────

class TestApiResponse:
    def test_ok(self):
        from spend_service.models.response import ApiResponse
        r = ApiResponse.ok(data={"key": "value"}, message="done")
        assert r.success is True
        assert r.data == {"key": "value"}
        assert r.error is None
        assert r.warnings == []

    def test_ok_with_warnings(self):
        from spend_service.models.response import ApiResponse
        r = ApiResponse.ok(warnings=("持久化缓存写入失败",))
        assert r.warnings == ["持久化缓存写入失败"]

    def test_fail(self):
        from spend_service.models.response import ApiResponse
        r = ApiResponse.fail(error="not found")
        assert r.success is False
        assert r.error == "not found"


# ─────────────────────────────────────────────────────────
# 7. HTTP 路由测试（TestClient，不需要真实数据库）
# ─────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def storage_dirs(tmp_path_factory):
    base = tmp_path_factory.mktemp("spenddy")
    capture, cache = base / "capture", base / "cache"
    capture.mkdir()
    cache.mkdir()
    return capture, cache


@pytest.fixture(scope="module")
def client(storage_dirs):
    """创建测试客户端：mock 数据库连接，存储使用临时目录，关闭后台任务"""
    from spend_service import main
    from spend_service.config import settings
    from spend_service.layers.acquisition import AcquisitionLayer
    from spend_service.layers.cache import CacheLayer
    from spend_service.services.dataset_manager import DatasetCacheManager
    from spend_service.services.store_adapter import PersistentStoreAdapter

    capture_dir, cache_dir = storage_dirs
    manager = DatasetCacheManager(
        adapter=PersistentStoreAdapter(
            capture=AcquisitionLayer(capture_dir=str(capture_dir)),
            durable=CacheLayer(cache_dir=str(cache_dir)),
        )
    )
    with patch("spend_service.main.init_mongodb", new_callable=AsyncMock, return_value=False), \
         patch("spend_service.main.init_redis", new_callable=AsyncMock, return_value=False), \
         patch("spend_service.main.close_connections", new_callable=AsyncMock), \
         patch("spend_service.routers.health.check_health", new_callable=AsyncMock, return_value={
             "durable_cache": {"status": "disabled"},
             "capture_store": {"status": "disabled"},
         }), \
         patch("spend_service.services.dataset_manager._manager", manager), \
         patch.object(settings, "BACKGROUND_SWEEPS_ENABLED", False):
        with TestClient(main.app) as c:
            yield c


class TestHealthRoutes:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"
        assert body["data"]["background_sweeps"] is False
        assert "X-Process-Time" in resp.headers

    def test_healthz_endpoint(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_readyz_endpoint(self, client):
        resp = client.get("/readyz")
        assert resp.status_code == 200
        assert resp.json()["ready"] is True

    def test_root_endpoint(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        body = resp.json()
        assert "version" in body
        assert "docs" in body


class TestSourceRoutes:
    def test_list_sources(self, client):
        resp = client.get("/api/sources")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["count"] == 3
        ids = {s["id"] for s in data["sources"]}
        assert ids == {"swiggy", "swiggy-instamart", "swiggy-dineout"}

    def test_unknown_source(self, client):
        assert client.get("/api/sources/zomato").status_code == 404
        assert client.post("/api/sources/zomato/load").status_code == 404
        assert client.post("/api/sources/zomato/import", json=[]).status_code == 404

    def test_import_then_dataset(self, client):
        resp = client.post("/api/sources/swiggy/import", json=_swiggy_raw())
        assert resp.status_code == 200
        body = resp.json()
        assert body["data"]["record_count"] == 1
        assert body["warnings"] == []

        resp = client.get("/api/sources/swiggy/dataset")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["aggregate"]["record_count"] == 1
        assert data["aggregate"]["total_amount"] == 1250.5
        assert data["records"][0]["gross_amount"] == 1250.5

        state = client.get("/api/sources/swiggy").json()["data"]
        assert state["state"] == "loaded"
        assert state["summary"]["record_count"] == 1

    def test_import_rejects_non_array(self, client):
        resp = client.post("/api/sources/swiggy/import", json={"orders": []})
        assert resp.status_code == 422
        assert resp.json()["success"] is False

    def test_import_rejects_missing_fields(self, client):
        resp = client.post("/api/sources/swiggy-dineout/import", json=[{"order_id": "1"}])
        assert resp.status_code == 422
        assert "created_at" in resp.json()["message"]

    def test_unload_then_reload_from_durable_cache(self, client):
        client.post("/api/sources/swiggy/import", json=_swiggy_raw())
        resp = client.delete("/api/sources/swiggy")
        assert resp.status_code == 200
        assert client.get("/api/sources/swiggy").json()["data"]["state"] == "unloaded"

        resp = client.post("/api/sources/swiggy/load")
        assert resp.status_code == 200
        assert resp.json()["data"]["loaded"] is True

    def test_load_from_capture_directory(self, client, storage_dirs):
        capture_dir, _ = storage_dirs
        raw = [{
            "order_id": "D-1",
            "created_at": 1709649900000,
            "history_status": "COMPLETED",
            "restaurant_name": "Toit",
            "total_amount": "2,400",
        }]
        (capture_dir / "swiggy_dineout_raw_data.json").write_text(json.dumps(raw), encoding="utf-8")
        resp = client.post("/api/sources/swiggy-dineout/load")
        assert resp.json()["data"]["loaded"] is True

        resp = client.post("/api/sources/swiggy-dineout/refresh")
        assert resp.json()["data"]["refreshed"] is True

    def test_load_nothing_available(self, client):
        resp = client.post("/api/sources/swiggy-instamart/load")
        assert resp.status_code == 200
        assert resp.json()["data"]["loaded"] is False
        assert client.get("/api/sources/swiggy-instamart/dataset").status_code == 404

    def test_breakdowns(self, client):
        client.post("/api/sources/swiggy/import", json=_swiggy_raw())

        monthly = client.get("/api/sources/swiggy/breakdown/monthly").json()["data"]["rows"]
        assert monthly == [{
            "month": "2024-03", "total_amount": 1250.5, "record_count": 1,
            "total_fees": 0.0, "total_tips": 0.0,
        }]

        top = client.get("/api/sources/swiggy/breakdown/counterparties?limit=5").json()["data"]
        assert top["rows"][0]["counterparty"] == "Meghana Foods"

        hourly = client.get("/api/sources/swiggy/breakdown/hourly").json()["data"]["rows"]
        assert hourly == [{"weekday": "Tuesday", "hour": 20, "count": 1}]

        filtered = client.get(
            "/api/sources/swiggy/breakdown/monthly",
            params={"start": "2024-04-01T00:00:00"},
        ).json()["data"]["rows"]
        assert filtered == []

    def test_breakdown_bad_kind(self, client):
        client.post("/api/sources/swiggy/import", json=_swiggy_raw())
        assert client.get("/api/sources/swiggy/breakdown/weekly").status_code == 400
        resp = client.get("/api/sources/swiggy/breakdown/monthly", params={"start": "someday"})
        assert resp.status_code == 400


class TestCacheRoutes:
    def test_stats(self, client):
        resp = client.get("/api/cache/stats")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert "durable_cache" in data
        assert "capture_store" in data
        assert "loaded_sources" in data["memory"]

    def test_clear_and_unload(self, client):
        client.post("/api/sources/swiggy/import", json=_swiggy_raw())
        resp = client.post("/api/cache/clear", json={"source_id": "swiggy", "unload": True})
        assert resp.status_code == 200
        assert client.get("/api/sources/swiggy").json()["data"]["state"] == "unloaded"
        # 采集目录中没有 swiggy 数据，持久化缓存已清空
        assert client.post("/api/sources/swiggy/load").json()["data"]["loaded"] is False

    def test_clear_unknown_source(self, client):
        resp = client.post("/api/cache/clear", json={"source_id": "zomato"})
        assert resp.status_code == 404
