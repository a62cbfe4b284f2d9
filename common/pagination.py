from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for request and set listings.

    `?page_size=` is honoured up to the bulk processing limit so a full batch
    can be loaded in one page.
    """

    page_size_query_param = "page_size"
    max_page_size = 200
