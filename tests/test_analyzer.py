from workspace_rag.index.analyzer import analyze, query_terms, term_frequencies


def test_words_are_lowercased_and_stop_words_dropped():
    assert analyze("The Quick brown fox is here") == ["quick", "brown", "fox", "here"]


def test_identifiers_are_split():
    terms = analyze("getUserName user_name HTTPServer")

    assert "getusername" in terms
    assert {"get", "user", "name"} <= set(terms)
    assert "user_name" in terms
    assert {"http", "server"} <= set(terms)


def test_single_characters_dropped():
    assert analyze("a b c x1") == ["x1"]


def test_term_frequencies_counts_repeats():
    assert term_frequencies("fox fox brown") == {"fox": 2, "brown": 1}


def test_query_terms_are_distinct_in_order():
    assert query_terms("brown fox brown") == ["brown", "fox"]
