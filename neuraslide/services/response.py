class ListResponseMixin:
    """Adds ``list_response`` to managers that implement ``list`` and ``count``.

    Produces the ``{events, total, hasMore}`` page shape used by the ledger
    query endpoints.
    """

    @classmethod
    def list_response(cls, db, *args, **kwargs):
        if "limit" in kwargs and "offset" in kwargs:
            limit = kwargs.pop("limit")
            offset = kwargs.pop("offset")
        else:
            if len(args) < 2:
                raise ValueError("limit and offset are required for list responses")
            *args, limit, offset = args
        items = cls.list(db, *args, limit=limit, offset=offset, **kwargs)
        total = cls.count(db, *args, **kwargs)
        return {"events": items, "total": total, "hasMore": offset + len(items) < total}
