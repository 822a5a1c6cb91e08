"""Album catalog API: the albums a buyer can choose on the order form."""
from rest_framework.views import APIView
from rest_framework.response import Response

from fulfillment.models import Album
from fulfillment.serializers import AlbumSerializer


class AlbumListView(APIView):

    def get(self, request):
        albums = Album.objects.filter(is_active=True).order_by("title")
        return Response(AlbumSerializer(albums, many=True).data)
