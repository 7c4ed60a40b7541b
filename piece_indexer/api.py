"""
Piece Index Query API

Read-only Flask app over the piece index:
- GET /sample/<provider_id>/<piece_cid>
- GET /ingestion-status/<provider_id>
"""

import logging

from flask import Flask, jsonify

from .types import Repository


CACHE_IMMUTABLE = "public, max-age=86400, immutable"
CACHE_SHORT = "public, max-age=60"


def create_app(repository: Repository) -> Flask:
    """Build the query API over a piece index repository."""
    app = Flask(__name__)
    logger = logging.getLogger("QueryAPI")

    @app.errorhandler(405)
    def method_not_allowed(error):
        # Only GET is served; anything else is an unknown resource
        return 'Not Found', 404

    @app.route('/sample/<provider_id>/<piece_cid>', methods=['GET'])
    def get_sample(provider_id, piece_cid):
        payload_cids = repository.get_piece_payload_blocks(provider_id, piece_cid)
        if not payload_cids:
            logger.debug(f"No samples for provider {provider_id} piece {piece_cid}")
            response = jsonify({'error': 'PROVIDER_OR_PIECE_NOT_FOUND'})
            response.headers['Cache-Control'] = CACHE_SHORT
            return response

        response = jsonify({'samples': payload_cids[:1]})
        response.headers['Cache-Control'] = CACHE_IMMUTABLE
        return response

    @app.route('/ingestion-status/<provider_id>', methods=['GET'])
    def get_ingestion_status(provider_id):
        state = repository.get_walker_state(provider_id)
        if state is None:
            body = {
                'providerId': provider_id,
                'ingestionStatus': 'Unknown provider ID'
            }
        else:
            body = {
                'providerId': provider_id,
                'ingestionStatus': state.status,
                'lastHeadWalkedFrom': state.last_head or state.head,
                'adsMissingPieceCID': state.ads_missing_piece_cid,
                'entriesNotRetrievable': state.entries_not_retrievable,
                'piecesIndexed': repository.count_pieces_indexed(provider_id)
            }

        response = jsonify(body)
        response.headers['Cache-Control'] = CACHE_SHORT
        return response

    return app
