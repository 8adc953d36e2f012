"""
基础资料 API

deviceTypes / resourceTypes / versions / flashRecords 共用一套 CRUD 路由：
GET 列表（分页）、GET 详情、POST 创建、PUT/PATCH 更新、DELETE 删除
versions 另有 POST /versions/upload（multipart 上传固件文件）
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, File, Form, Query, Request, Response, UploadFile


# 集合名 → 列表接口支持的过滤参数（查询参数名, 字段名）
COLLECTION_FILTERS: dict[str, list[tuple[str, str]]] = {
    "deviceTypes": [("manufacturer", "manufacturer")],
    "resourceTypes": [("category", "category")],
    "versions": [],
    "flashRecords": [("status", "status"), ("deviceTypeId", "device_type_id")],
}


def build_collection_router(name: str) -> APIRouter:
    router = APIRouter(prefix=f"/{name}", tags=[name])
    filter_params = COLLECTION_FILTERS.get(name, [])

    def _collection(request: Request):
        return request.app.state.catalog_service.collection(name)

    if name == "versions":
        @router.post("/upload", status_code=201)
        async def upload_version(
            request: Request,
            file: UploadFile = File(...),
            version_number: Optional[str] = Form(None, alias="versionNumber"),
            release_date: Optional[str] = Form(None, alias="releaseDate"),
            description: Optional[str] = Form(None),
        ):
            content = await file.read()
            return await request.app.state.catalog_service.upload_version(
                file.filename or "",
                content,
                version_number=version_number,
                release_date=release_date,
                description=description,
            )

    @router.get("")
    async def list_items(
        request: Request,
        page: int = Query(1, ge=1),
        page_size: int = Query(10, ge=1, le=100, alias="pageSize"),
    ):
        filters: dict[str, Optional[str]] = {
            field: request.query_params.get(param) for param, field in filter_params
        }
        return await _collection(request).list(page=page, page_size=page_size, **filters)

    @router.get("/{item_id}")
    async def get_item(item_id: str, request: Request):
        return await _collection(request).get(item_id)

    @router.post("", status_code=201)
    async def create_item(request: Request, payload: dict[str, Any] = Body(...)):
        return await _collection(request).create(payload)

    @router.api_route("/{item_id}", methods=["PUT", "PATCH"])
    async def update_item(item_id: str, request: Request, payload: dict[str, Any] = Body(...)):
        return await _collection(request).update(item_id, payload)

    @router.delete("/{item_id}", status_code=204)
    async def delete_item(item_id: str, request: Request):
        await _collection(request).delete(item_id)
        return Response(status_code=204)

    return router


routers = [build_collection_router(name) for name in COLLECTION_FILTERS]
