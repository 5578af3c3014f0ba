"""拠点ごとの在庫確認コレクタ."""
