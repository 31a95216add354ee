from conftest import make_region

from listing_etl.collector_quintoandar.mapper import (
    DETAIL_FIELDS,
    build_detail_params,
    build_search_params,
    extract_hits,
    to_raw_record,
    to_search_page,
)

URL_TEMPLATE = "https://www.quintoandar.com.br/imovel/{id}"


def test_search_params_carry_viewport_and_pagination():
    region = make_region("sp", lat=-23.5, lng=-46.6)

    params = build_search_params(region, 200, 100, business_context="RENT", device_id="dev-1")

    assert params["filters.businessContext"] == "RENT"
    assert params["filters.location.countryCode"] == "BR"
    assert params["filters.location.viewport.north"] == str(region.viewport.north)
    assert params["filters.location.viewport.west"] == str(region.viewport.west)
    assert params["filters.location.coordinate.lat"] == "-23.5"
    assert params["pagination.offset"] == "200"
    assert params["pagination.pageSize"] == "100"
    assert params["context.deviceId"] == "dev-1"


def test_detail_params_repeat_return_fields():
    params = build_detail_params("42", business_context="SALE")

    assert ("house_ids", "42") in params
    assert ("business_context", "SALE") in params
    assert [value for key, value in params if key == "return"] == DETAIL_FIELDS


def test_search_page_reads_ids_and_total():
    resp = {"hits": {"total": {"value": 250}, "hits": [{"_id": "1"}, {"_id": 2}, {"_source": {}}]}}

    page = to_search_page(resp)

    assert page.ids == ["1", "2"]
    assert page.total_reported == 250


def test_search_page_accepts_plain_total():
    page = to_search_page({"hits": {"total": 3, "hits": [{"_id": "a"}]}})

    assert page.total_reported == 3


def test_response_without_hits_is_empty_region():
    page = to_search_page({"message": "no results"})

    assert page.ids == []
    assert page.total_reported == 0


def test_extract_hits_handles_missing_paths():
    assert extract_hits({"hits": None}) == []
    assert extract_hits({"hits": {"hits": "nope"}}) == []


def test_search_page_skips_malformed_hits():
    page = to_search_page({"hits": {"total": 3, "hits": ["junk", None, {"_id": 7}]}})

    assert page.ids == ["7"]
    assert page.total_reported == 3


def test_raw_record_merges_first_hit():
    resp = {"hits": {"hits": [{"_id": "77", "_source": {"rent": 1500, "city": "Recife"}}]}}

    record = to_raw_record(resp, url_template=URL_TEMPLATE, source="quintoandar")

    assert record["id"] == "77"
    assert record["rent"] == 1500
    assert record["source"] == "quintoandar"
    assert record["url"] == "https://www.quintoandar.com.br/imovel/77"
    assert record["raw_data"] == {"rent": 1500, "city": "Recife"}


def test_raw_record_absent_without_hits():
    assert to_raw_record({"hits": {"hits": []}}, url_template=URL_TEMPLATE, source="q") is None
