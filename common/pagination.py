from django.conf import settings
from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Default for back-office lists; `?page_size=` is honoured up to 200 rows."""

    page_size_query_param = "page_size"
    max_page_size = 200


class OrderResultsSetPagination(PageNumberPagination):
    # Till screens page orders in fixed blocks.
    page_size = settings.ORDER_PAGE_SIZE
