# type: ignore

import datetime

import pytest

from esgate.ql import FilterParser, QueryProcessor
from esgate.search import (
    BadRequestError,
    ConfigurationError,
    NotFoundError,
    SearchClient,
    UpstreamError,
)
from esgate.search import client as client_module

from ._data import (
    FILE_INDEX,
    FILE_TYPE,
    SUBJECT_INDEX,
    SUBJECT_TYPE,
    files,
    subjects,
)
from ._providers import get_client, get_config, get_fake
from ._queries import queries


def get_ids(docs: list[dict], key: str = "subject_id") -> list[str]:
    return sorted(doc[key] for doc in docs)


@pytest.mark.asyncio
async def test_initialize():
    fake = get_fake()
    client = await get_client(fake)
    assert client.metadata.ready

    field_types = client.get_field_types(SUBJECT_INDEX)
    assert field_types["age"] == "long"
    assert field_types["visits"] == "nested"
    assert field_types["visits.days"] == "long"

    assert client.is_array_field(SUBJECT_INDEX, "scores")
    assert client.is_array_field(SUBJECT_INDEX, "symptoms")
    assert client.is_array_field(SUBJECT_INDEX, "visits")
    assert not client.is_array_field(SUBJECT_INDEX, "not_a_field")
    assert not client.is_array_field(SUBJECT_INDEX, "age")
    assert not client.is_array_field(FILE_INDEX, "scores")
    assert not client.is_array_field("unknown_index", "whatever")

    metadata = client.metadata.metadata_of(SUBJECT_INDEX)
    assert metadata.nested_paths("visits.days") == ["visits"]
    assert metadata.nested_paths("visits") == ["visits"]
    assert metadata.nested_paths("age") == []

    fields = client.get_es_fields()
    assert set(fields) == {SUBJECT_INDEX, FILE_INDEX}
    assert fields[FILE_INDEX].type == FILE_TYPE
    assert set(fields[FILE_INDEX].fields) == {
        "file_id",
        "subject_id",
        "format",
        "size",
    }
    result = client.get_es_fields(SUBJECT_INDEX)
    assert result.index == SUBJECT_INDEX
    assert result.type == SUBJECT_TYPE
    assert "visits.visit_type" in result.fields
    with pytest.raises(BadRequestError) as e:
        client.get_es_fields("unknown_index")
    assert "unknown_index" in str(e.value)

    assert client.get_index_by_type(FILE_TYPE) == FILE_INDEX
    with pytest.raises(BadRequestError):
        client.get_index_by_type("unknown_type")
    with pytest.raises(NotFoundError):
        client.get_field_types("unknown_index")

    mapping_calls = [
        args["index"] for op, args in fake.calls if op == "get_mapping"
    ]
    assert sorted(mapping_calls) == sorted([SUBJECT_INDEX, FILE_INDEX])
    assert fake.ops()[-1] == "search"
    await client.close()
    assert fake.closed


@pytest.mark.asyncio
async def test_initialize_without_config_index():
    fake = get_fake()
    client = await get_client(fake, config_index=None)
    assert client.metadata.ready
    assert not client.is_array_field(SUBJECT_INDEX, "scores")
    assert "search" not in fake.ops()


@pytest.mark.asyncio
async def test_initialize_empty_indices():
    fake = get_fake()
    client = SearchClient(config=get_config(indices=[]), client=fake)
    with pytest.raises(ConfigurationError):
        await client.initialize()
    assert not client.metadata.ready
    assert "get_mapping" not in fake.ops()
    with pytest.raises(ConfigurationError):
        await client.get_data(SUBJECT_INDEX, SUBJECT_TYPE)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fail_on",
    [{FILE_INDEX}, {"get_mapping"}],
)
async def test_initialize_mapping_failure(fail_on):
    fake = get_fake(fail_on=fail_on)
    client = SearchClient(config=get_config(), client=fake)
    with pytest.raises(ConfigurationError) as e:
        await client.initialize()
    assert e.value.status_code == 500
    assert not client.metadata.ready


@pytest.mark.asyncio
async def test_get_data():
    client = await get_client()

    result = await client.get_data(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        filter={"=": {"gender": "female"}},
        fields=["subject_id", "age"],
        sort=[{"age": "desc"}],
    )
    assert result == [
        {"subject_id": "s04", "age": 29},
        {"subject_id": "s02", "age": 18},
        {"subject_id": "s00", "age": 5},
    ]

    result = await client.get_data(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        fields=["subject_id"],
        sort=["gender:asc", "age:desc"],
        offset=1,
        size=3,
    )
    assert [r["subject_id"] for r in result] == ["s02", "s00", "s03"]

    result = await client.get_data(FILE_INDEX, FILE_TYPE, size=100)
    assert len(result) == len(files)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "offset, size",
    [(0, 10001), (9990, 11), (10000, 1)],
)
async def test_get_data_page_ceiling(offset, size):
    fake = get_fake()
    client = await get_client(fake)
    calls = len(fake.calls)
    with pytest.raises(BadRequestError) as e:
        await client.get_data(
            SUBJECT_INDEX, SUBJECT_TYPE, offset=offset, size=size
        )
    assert "download" in str(e.value)
    assert len(fake.calls) == calls


@pytest.mark.asyncio
async def test_get_data_invalid_fields():
    fake = get_fake()
    client = await get_client(fake)
    calls = len(fake.calls)

    with pytest.raises(BadRequestError) as e:
        await client.get_data(
            SUBJECT_INDEX,
            SUBJECT_TYPE,
            filter={
                "AND": [
                    {"=": {"height": 1}},
                    {"in": {"age": [1, 2]}},
                    {"exists": "weight"},
                ]
            },
        )
    assert e.value.fields == ["height", "weight"]
    assert '"height", "weight"' in str(e.value)

    with pytest.raises(BadRequestError) as e:
        await client.get_data(
            SUBJECT_INDEX, SUBJECT_TYPE, sort=[{"age": "asc"}, {"x": "asc"}]
        )
    assert e.value.fields == ["x"]

    with pytest.raises(BadRequestError) as e:
        await client.get_data(
            SUBJECT_INDEX, SUBJECT_TYPE, fields=["age", "x", "y"]
        )
    assert e.value.fields == ["x", "y"]

    with pytest.raises(BadRequestError):
        await client.get_data(
            SUBJECT_INDEX, SUBJECT_TYPE, sort=[{"age": "sideways"}]
        )

    with pytest.raises(BadRequestError):
        await client.get_data(
            SUBJECT_INDEX, SUBJECT_TYPE, filter={"~": {"age": 1}}
        )

    assert len(fake.calls) == calls


@pytest.mark.asyncio
async def test_get_count():
    fake = get_fake()
    client = await get_client(fake)
    assert await client.get_count(SUBJECT_INDEX, SUBJECT_TYPE) == len(
        subjects
    )
    count = await client.get_count(
        SUBJECT_INDEX, SUBJECT_TYPE, filter={"=": {"race": "white"}}
    )
    assert count == 3
    op, args = fake.calls[-1]
    assert op == "search"
    assert args["size"] == 0
    assert args["track_total_hits"] is True


@pytest.mark.asyncio
async def test_query_drops_unset_arguments():
    client = await get_client()
    received = {}

    async def search(**kwargs):
        received.update(kwargs)
        return {"hits": {"total": {"value": 0}, "hits": []}}

    client._client.search = search
    await client.get_data(SUBJECT_INDEX, SUBJECT_TYPE, fields=["age"])
    assert received == {"index": SUBJECT_INDEX, "source": ["age"]}


@pytest.mark.asyncio
async def test_upstream_error():
    fake = get_fake()
    client = await get_client(fake)
    fake.fail_on.add("search")
    with pytest.raises(UpstreamError) as e:
        await client.get_count(SUBJECT_INDEX, SUBJECT_TYPE)
    assert e.value.status_code == 502
    assert e.value.operation == "get_count"
    assert e.value.index == SUBJECT_INDEX
    assert "connection refused" in str(e.value)
    error = e.value.to_dict()
    assert error["kind"] == "upstream_failure"
    assert error["type"] == SUBJECT_TYPE
    assert fake.ops().count("search") == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "page_size",
    [4, 5, 25, 10000],
)
async def test_download_data(monkeypatch, page_size):
    monkeypatch.setattr(client_module, "SCROLL_PAGE_SIZE", page_size)
    fake = get_fake()
    client = await get_client(fake)

    result = await client.export_data(FILE_INDEX, FILE_TYPE)
    assert len(result) == len(files)
    assert get_ids(result, "file_id") == get_ids(files, "file_id")

    assert fake.cleared == ["scroll-1"]
    assert fake.ops().count("clear_scroll") == 1
    assert fake.ops()[-1] == "clear_scroll"
    batches = -(-len(files) // page_size)
    assert fake.ops().count("scroll") == batches
    op, args = [c for c in fake.calls if c[0] == "search"][-1]
    assert args["scroll"] == "1m"
    assert args["size"] == page_size


@pytest.mark.asyncio
async def test_download_data_filter_sort(monkeypatch):
    monkeypatch.setattr(client_module, "SCROLL_PAGE_SIZE", 3)
    fake = get_fake()
    client = await get_client(fake)

    docs = []
    async for doc in client.download_data(
        FILE_INDEX,
        FILE_TYPE,
        filter={"=": {"format": "bam"}},
        fields=["file_id", "size"],
        sort=[{"size": "desc"}],
    ):
        docs.append(doc)
    expected = sorted(
        [
            {"file_id": f["file_id"], "size": f["size"]}
            for f in files
            if f["format"] == "bam"
        ],
        key=lambda f: f["size"],
        reverse=True,
    )
    assert docs == expected
    op, args = [c for c in fake.calls if c[0] == "search"][-1]
    assert args["sort"] == ["size:desc"]
    assert fake.ops().count("clear_scroll") == 1


@pytest.mark.asyncio
async def test_download_data_invalid_arguments():
    fake = get_fake()
    client = await get_client(fake)
    calls = len(fake.calls)

    with pytest.raises(BadRequestError) as e:
        client.download_data(
            FILE_INDEX, FILE_TYPE, fields=["file_id", "bad1", "bad2"]
        )
    assert '"bad1", "bad2"' in str(e.value)
    assert e.value.fields == ["bad1", "bad2"]

    with pytest.raises(BadRequestError):
        client.download_data(FILE_INDEX, None)
    with pytest.raises(BadRequestError):
        client.download_data(FILE_INDEX, FILE_TYPE, sort=[{"bad": "asc"}])
    assert len(fake.calls) == calls


@pytest.mark.asyncio
async def test_download_data_error_clears_scroll(monkeypatch):
    monkeypatch.setattr(client_module, "SCROLL_PAGE_SIZE", 5)
    fake = get_fake()
    client = await get_client(fake)

    docs = []
    with pytest.raises(UpstreamError):
        async for doc in client.download_data(FILE_INDEX, FILE_TYPE):
            docs.append(doc)
            if len(docs) == 5:
                fake.fail_on.add("scroll")
    assert len(docs) == 5
    assert fake.cleared == ["scroll-1"]


@pytest.mark.asyncio
async def test_download_data_early_close(monkeypatch):
    monkeypatch.setattr(client_module, "SCROLL_PAGE_SIZE", 5)
    fake = get_fake()
    client = await get_client(fake)

    iterator = client.download_data(FILE_INDEX, FILE_TYPE)
    first = await iterator.__anext__()
    assert first["file_id"] == "f000"
    await iterator.aclose()
    assert fake.cleared == ["scroll-1"]
    assert "scroll" not in fake.ops()


@pytest.mark.asyncio
async def test_download_data_open_failure():
    fake = get_fake()
    client = await get_client(fake)
    fake.fail_on.add("search")
    with pytest.raises(UpstreamError) as e:
        await client.export_data(FILE_INDEX, FILE_TYPE)
    assert e.value.operation == "scroll_query"
    assert e.value.index == FILE_INDEX
    assert e.value.type == FILE_TYPE
    assert fake.cleared == []


@pytest.mark.asyncio
async def test_scroll_query(monkeypatch):
    monkeypatch.setattr(client_module, "SCROLL_PAGE_SIZE", 2)
    fake = get_fake()
    client = await get_client(fake)

    docs = [
        doc
        async for doc in client.scroll_query(
            FILE_INDEX,
            FILE_TYPE,
            query={"term": {"format": "bam"}},
            fields=["file_id"],
            sort=["size:desc"],
        )
    ]
    assert [d["file_id"] for d in docs] == [
        f["file_id"]
        for f in sorted(files, key=lambda f: f["size"], reverse=True)
        if f["format"] == "bam"
    ]
    op, args = [c for c in fake.calls if c[0] == "search"][-1]
    assert args["index"] == FILE_INDEX
    assert args["query"] == {"term": {"format": "bam"}}
    assert [c[1]["scroll_id"] for c in fake.calls if c[0] == "scroll"] == [
        "scroll-1"
    ] * 5
    assert fake.cleared == ["scroll-1"]


@pytest.mark.asyncio
async def test_download_data_non_json_filter_value():
    fake = get_fake()
    client = await get_client(fake)
    filter = {"=": {"format": datetime.date(2020, 1, 1)}}

    assert await client.get_data(FILE_INDEX, FILE_TYPE, filter=filter) == []
    assert await client.export_data(FILE_INDEX, FILE_TYPE, filter=filter) == []
    op, args = [c for c in fake.calls if c[0] == "search"][-1]
    assert args["query"] == {"term": {"format": datetime.date(2020, 1, 1)}}
    assert fake.cleared == ["scroll-1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("query", queries)
async def test_filter_matches_predicate(query):
    client = await get_client()
    metadata = client.metadata.metadata_of(SUBJECT_INDEX)

    result = await client.get_data(
        SUBJECT_INDEX, SUBJECT_TYPE, filter=query["filter"], size=100
    )
    expected = QueryProcessor.filter_items(
        subjects,
        FilterParser.parse(query["filter"]),
        metadata.nested_paths,
    )
    assert get_ids(result) == get_ids(expected)

    count = await client.get_count(
        SUBJECT_INDEX, SUBJECT_TYPE, filter=query["filter"]
    )
    assert count == len(expected)


@pytest.mark.asyncio
async def test_array_field_element_matching():
    client = await get_client()

    # s00 has scores [5, 50]: 5 <= 20 and 50 >= 10, but no single score
    # lies in [10, 20]
    result = await client.get_data(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        filter={"between": {"scores": [10, 20]}},
        size=100,
    )
    assert get_ids(result) == ["s01", "s02", "s04", "s06"]

    # s00 has an initial visit (day 5) and a day 15 followup, none of
    # them is an initial visit within days 10 to 16
    result = await client.get_data(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        filter={
            "AND": [
                {"=": {"visits.visit_type": "initial"}},
                {"between": {"visits.days": [10, 16]}},
            ]
        },
        size=100,
    )
    assert get_ids(result) == ["s01"]


@pytest.mark.asyncio
async def test_numeric_aggregation():
    fake = get_fake()
    client = await get_client(fake)

    result = await client.numeric_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="age",
        range_start=0,
        range_end=30,
        range_step=10,
    )
    assert [(b.lower, b.upper, b.count) for b in result] == [
        (0, 10, 2),
        (10, 20, 2),
        (20, 30, 2),
    ]
    assert "numeric_stats" not in str(fake.calls[-1])

    result = await client.numeric_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="age",
        range_start=0,
        range_end=30,
        bin_count=3,
    )
    assert [(b.lower, b.upper, b.count) for b in result] == [
        (0, 10, 2),
        (10, 20, 2),
        (20, 30, 2),
    ]

    # observed bounds, the maximum is counted
    result = await client.numeric_aggregation(
        SUBJECT_INDEX, SUBJECT_TYPE, field="age", range_step=10
    )
    assert [(b.lower, b.upper, b.count) for b in result] == [
        (0, 10, 2),
        (10, 20, 2),
        (20, 30, 3),
    ]

    result = await client.numeric_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="age",
        range_step=10,
        range_start=10,
        range_end=25,
    )
    assert [(b.lower, b.upper, b.count) for b in result] == [
        (10, 20, 2),
        (20, 25, 0),
    ]

    # equal explicit bounds count the single value
    result = await client.numeric_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="age",
        range_step=10,
        range_start=25,
        range_end=25,
    )
    assert [(b.lower, b.upper, b.count) for b in result] == [(25, 25, 1)]

    result = await client.numeric_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="age",
        bin_count=2,
        filter={"=": {"gender": "nobody"}},
    )
    assert result == []


@pytest.mark.asyncio
async def test_numeric_aggregation_filters():
    client = await get_client()

    result = await client.numeric_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="age",
        range_start=0,
        range_end=40,
        range_step=20,
        filter={"AND": [{">=": {"age": 20}}, {"=": {"race": "white"}}]},
    )
    assert [b.count for b in result] == [0, 2]

    result = await client.numeric_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="age",
        range_start=0,
        range_end=40,
        range_step=20,
        filter={"AND": [{">=": {"age": 20}}, {"=": {"race": "white"}}]},
        filter_self=False,
    )
    assert [b.count for b in result] == [1, 2]

    result = await client.numeric_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="age",
        range_start=0,
        range_end=40,
        range_step=20,
        filter={">=": {"age": 20}},
        filter_self=False,
        default_auth_filter={"=": {"project": "p1"}},
    )
    assert [b.count for b in result] == [2, 1]


@pytest.mark.asyncio
async def test_numeric_aggregation_nested_field():
    client = await get_client()
    result = await client.numeric_aggregation(
        SUBJECT_INDEX, SUBJECT_TYPE, field="visits.days", bin_count=2
    )
    assert [(b.lower, b.upper, b.count) for b in result] == [
        (2, 11, 3),
        (11, 20, 4),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "args",
    [
        dict(),
        dict(range_step=10, bin_count=3),
        dict(range_step=0),
        dict(range_step=-1),
        dict(bin_count=0),
        dict(range_step=5, range_start=10, range_end=0),
        dict(range_step=5, field="height"),
        dict(range_step=0.1, range_start=0, range_end=1e6),
        dict(bin_count=65537),
    ],
)
async def test_numeric_aggregation_bad_arguments(args):
    fake = get_fake()
    client = await get_client(fake)
    calls = len(fake.calls)
    args = {"field": "age", **args}
    with pytest.raises(BadRequestError):
        await client.numeric_aggregation(SUBJECT_INDEX, SUBJECT_TYPE, **args)
    assert len(fake.calls) == calls


@pytest.mark.asyncio
async def test_text_aggregation():
    client = await get_client()

    result = await client.text_aggregation(
        SUBJECT_INDEX, SUBJECT_TYPE, field="gender"
    )
    assert [(b.key, b.count) for b in result] == [
        ("female", 3),
        ("male", 3),
        ("unknown", 1),
    ]
    assert all(b.nested is None for b in result)

    result = await client.text_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="gender",
        filter={"=": {"gender": "male"}},
        filter_self=False,
        default_auth_filter={"in": {"project": ["p1", "p2"]}},
        nested_agg_fields=["race", "project"],
    )
    assert [(b.key, b.count) for b in result] == [("female", 3), ("male", 2)]
    female = result[0]
    assert [(b.key, b.count) for b in female.nested["project"]] == [
        ("p1", 2),
        ("p2", 1),
    ]
    assert sorted((b.key, b.count) for b in female.nested["race"]) == [
        ("asian", 1),
        ("black", 1),
        ("white", 1),
    ]

    # array field, each document counted once per distinct value
    result = await client.text_aggregation(
        SUBJECT_INDEX, SUBJECT_TYPE, field="symptoms"
    )
    assert [(b.key, b.count) for b in result] == [
        ("cough", 4),
        ("fever", 3),
        ("headache", 1),
    ]


@pytest.mark.asyncio
async def test_text_aggregation_nested_field():
    client = await get_client()

    result = await client.text_aggregation(
        SUBJECT_INDEX, SUBJECT_TYPE, field="visits.visit_type"
    )
    assert sorted((b.key, b.count) for b in result) == [
        ("followup", 3),
        ("initial", 3),
    ]

    result = await client.text_aggregation(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        field="gender",
        nested_agg_fields=["visits.visit_type"],
    )
    female = next(b for b in result if b.key == "female")
    assert sorted(
        (b.key, b.count) for b in female.nested["visits.visit_type"]
    ) == [("followup", 2), ("initial", 2)]

    with pytest.raises(BadRequestError):
        await client.text_aggregation(
            SUBJECT_INDEX,
            SUBJECT_TYPE,
            field="visits.visit_type",
            nested_agg_fields=["gender"],
        )


@pytest.mark.asyncio
async def test_total_count():
    client = await get_client()
    count = await client.total_count(
        SUBJECT_INDEX,
        SUBJECT_TYPE,
        filter={"=": {"gender": "female"}},
        default_auth_filter={"=": {"project": "p1"}},
    )
    assert count == 2


@pytest.mark.asyncio
async def test_context_manager():
    fake = get_fake()
    async with SearchClient(config=get_config(), client=fake) as client:
        assert client.metadata.ready
    assert fake.closed
